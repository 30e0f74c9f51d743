"""
Safe Autonomy: Policy Engine

This module keeps autonomous agents from executing irreversible or harmful
actions without oversight:
- Risk classification (risk_classifier.py)
- Anti-abuse throttling (anti_abuse.py)
- Locks and approvals (lock_manager.py)
- Reviewer routing (approval_router.py)
- Passive consensus (passive_consensus.py)
- Bounded retries (retry_handler.py)
- Audit trail (audit.py)
- Configuration (config.py)

engine.py composes them behind SafeAutonomyEngine.
"""

__version__ = "0.1.0"
