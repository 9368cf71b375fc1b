"""Cutroom: multi-agent content production pipelines.

This package coordinates short-form video production across independent
agents, providing:
- A seven-stage pipeline state machine with ordered claims
- PostgreSQL persistence with status-guarded conditional updates
- A work queue that exposes claimable stages to agents
- Stage handlers for research, script, voice, visual and editing work
- An attribution ledger and payout calculator for reward splitting
"""

__version__ = "0.1.0"
