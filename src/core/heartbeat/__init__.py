"""
Heartbeat — proactive scanning of each owner's portfolio.

Modules:
- tasks.py: Task model and TaskStore (one open task per entity and trigger)
- sources.py: PropertyDataSource protocol and an in-memory implementation
- context.py: HeartbeatContext (per-user budget, dedup, findings)
- scanners.py: the eight domain scanners
- outcomes.py: scoring of terminal tasks
- maintenance.py: RetentionJob (periodic cleanup)
- runner.py: HeartbeatRunner (batched sweep and tick loop)

Feature Flag: FEATURE_HEARTBEAT (default: true)
"""
