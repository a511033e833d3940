# ABOUTME: otel-demo-access package initialization
# ABOUTME: Exposes version information for the CLI and MCP server

"""
otel-demo-access - Reach the OpenTelemetry demo observability stack on Kubernetes.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

The OpenTelemetry demo runs a handful of services inside a cluster
(frontend proxy, Grafana, Prometheus, Jaeger, a Locust load generator).
None of them is reachable from an operator's laptop until something
exposes it. This package does that exposing, in one of several ways:

1. PORT-FORWARD: a local TCP listener tunnels to the Service
   (nothing changes inside the cluster)
2. LOADBALANCER: the Service is switched to type LoadBalancer and we wait
   for the cloud provider to hand out an address
3. NODEPORT: the Service is switched to type NodePort and we combine the
   assigned port with a node address

It also installs ArgoCD and removes the demo resources again.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

otel_access/
├── __init__.py          <- YOU ARE HERE
├── config.py            <- Settings (env vars, service catalog, timeouts)
├── orchestrator.py      <- Exposure strategies, readiness polling
├── processes.py         <- Background port-forwards, cancellation, shutdown
├── credentials.py       <- Admin credentials read from cluster secrets
├── console.py           <- Operator-facing terminal output
├── cli.py               <- `otel-access` command line entry point
├── server.py            <- MCP server exposing the same operations
├── utils/
│   ├── kubectl.py       <- Async kubectl wrapper and error taxonomy
│   ├── secrets.py       <- Decoded Secret field access
│   ├── probe.py         <- HTTP reachability checks
│   ├── logging.py       <- Structured logging with audit trails
│   └── safety.py        <- Read-only mode and confirmation guards
└── workflows/
    ├── argocd_setup.py  <- Install ArgoCD
    ├── cleanup.py       <- Remove demo resources
    └── loadgen.py       <- Reach the load generator UI
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
