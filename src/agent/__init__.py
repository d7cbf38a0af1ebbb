"""Telemetry buffering and delivery agent.

Submodules are imported directly (`agent.controller`, `agent.sdk`, ...);
`storage` and `collector` import `agent.models` and `agent.errors`.
"""
