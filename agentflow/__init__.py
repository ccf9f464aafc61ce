"""agentflow - flow validation and graph execution engine.

Runs visual-editor automation flows (triggers, prompts, actions, conditions,
transformers) as queued, retried, cancellable executions.
"""

__version__ = "0.1.0"
