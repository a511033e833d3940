# ABOUTME: Workflows package initialization for otel-demo-access
# ABOUTME: Contains the multi-step operator workflows built on the cluster client

"""
otel-demo-access Workflows Package

Workflows run a fixed sequence of steps and report each one:

    - argocd_setup.py: Install ArgoCD and print how to reach it
    - cleanup.py: Remove the demo and, optionally, its supporting controllers
    - loadgen.py: Reach the load generator UI with the right target host
"""
