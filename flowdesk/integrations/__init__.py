"""
Flowdesk Workflow Coordinator
Outbound integrations.

Submodules:
    - engine_gateway: HTTP client for the workflow engine (resume + legacy callbacks)
"""
