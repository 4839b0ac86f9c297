"""
Unified energy aggregator daemon.

Tracks real energy meters and estimated bulbs/switches in one place,
integrates their energy over time, prices every increment at the rate valid
when it was consumed (time-of-use), keeps today/month totals, and publishes
a summary snapshot to downstream sinks.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""
