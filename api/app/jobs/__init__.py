"""One-off job entrypoints.

These modules are designed to run as:

  python -m api.app.jobs.replay_telemetry <file.json>
"""
