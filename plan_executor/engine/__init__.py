"""Plan execution engine.

The engine turns a goal into a persisted, ordered plan and advances it step by
step:

- ``planning`` produces step specifications from a goal.
- ``approval`` decides which steps need human sign-off.
- ``tools`` is the boundary to whatever actually performs a step.
- ``repos`` persists plans, steps and the audit timeline.
- ``runtime`` contains the Step Runner and the re-entrant Plan Runner.
- ``service`` is the public API used by applications and the HTTP server.
"""
