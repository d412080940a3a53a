"""
Test suite for the DeploymentSync control loop.

This package contains tests for the synchronization components:
- DeploymentSyncReconciler create/update paths and error classification
- RateLimitedWorkQueue deduplication, single-flight and backoff
- SyncController watch, resync and worker dispatch
"""
