"""
Resource Scheduler: Runtime Services

Ambient services shared by the scheduling core and its hosts:
structured logging, layered configuration and health checks.
"""
