# ABOUTME: Utilities package initialization for otel-demo-access
# ABOUTME: Contains the cluster client, secret access, probing, safety and logging

"""
otel-demo-access Utilities Package

Shared utilities:
    - kubectl.py: Async kubectl wrapper with retry logic and error taxonomy
    - secrets.py: Decoded single-field access to Kubernetes Secrets
    - probe.py: HTTP reachability checks for reported URLs
    - safety.py: Read-only mode and destructive operation guards
    - logging.py: Structured logging with correlation IDs and audit trail
"""
