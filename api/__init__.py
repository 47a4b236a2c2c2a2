"""
Resource Scheduler: HTTP Adapter

Thin FastAPI layer over the workflow orchestrator. See api.server.
"""
