"""Execution/recovery engine.

- `recovery`: failure classification and the strategy table
- `dispatcher`: one capability call with retry bookkeeping
- `verification`: when to request an automatic outcome check, and how to read it
- `escalation`: the human pause message and reply interpretation

The plan state itself lives in `planloop.plan`; the loop that wires these
pieces together is `planloop.agents.executor`.
"""
