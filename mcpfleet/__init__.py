"""mcpfleet: local fleet manager for containerized MCP servers.

Single-node reconciler that keeps a small desired-state record store in
agreement with a local Docker daemon:
 - convention-aware wrapper over container runtime primitives
 - port allocation for configured servers
 - orphan detection and cleanup for containers we created
 - safe recreation of running containers when defaults change
"""
