"""
Arbitration Engine - Escrow Dispute Resolution
==============================================

Back-office service that turns a complaint about an escrow transaction into a
binding outcome:
1. Tiered case state machine with auto-escalation
2. Arbitrator selection and reputation feedback
3. Weighted commit-reveal voting
4. Settlement hand-off to the ledger service
"""

__version__ = "1.0.0"
