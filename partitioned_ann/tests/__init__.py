"""
Tests Module: Unit and Integration Tests

Test Coverage:
    - Distance kernels, top-k heap and global merge
    - Partition state machine, catalog CAS transitions and build leases
    - Builder, staleness tracking and artifact retention
    - Query rewriter decision table and coverage rule
    - Scatter/gather executor failure, cancellation and timeout
    - End-to-end partially indexed search through the session facade
"""
