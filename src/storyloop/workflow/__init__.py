"""Workflow execution for story queues.

The pieces are small on purpose and composed by the CLI controllers:

- ``runner`` drives one agent execution and turns its event stream into
  printer calls, pairing tool uses with results via ``correlator``.
- ``routing`` maps a story status to the next workflow.
- ``queue`` and ``lifecycle`` sequence stories and steps with fail-fast
  semantics; ``retry`` wraps a single story with a bounded rate-limit retry.
"""
