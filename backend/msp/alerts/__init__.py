"""
alerts — Alert occurrence notification dispatch.

Sub-modules:
    alert_service   — Orchestration: load, resolve, quiet hours, dispatch
    resolver        — Employee / client subscription matching
    quiet_hours     — Local-time suppression windows (staff only)
    dispatcher      — Per-subscriber, per-channel isolated attempts
    recorder        — Best-effort delivery log writes
    phrases         — en / es phrase table
    store           — AlertStore interface + SQLAlchemy implementation
    channels/       — Email, SMS and realtime content + transports
    models          — Data structures shared across the package
"""
