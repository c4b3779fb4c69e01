"""Business-logic layer (MongoDB-backed).

Pipeline services live in:
- telemetry_ingestor.py (validate + persist readings, then alert evaluation)
- alert_engine.py (threshold rules + per-type cooldown suppression)
- incident_manager.py (incident lifecycle: acknowledge / resolve / escalate)
- notification_service.py (push fan-out with per-token accounting)
- command_dispatcher.py (device commands over the transport router)
- device_events.py (broker topic handlers wiring the above together)
"""

# Import side-effects are intentionally avoided here; modules are imported by state/routers as needed.
