"""
Clinisafe Recommendation Safety Engine
======================================

Safety layer for AI-generated care-plan recommendations.  Each proposed
recommendation is sent to an external ML validator; the answers are
classified into safety checks (drug interactions, contraindications, dosage
problems ...), recorded in a persistent ledger that supports documented
clinician overrides, and routed to a prioritized human review queue with
SLA deadlines.

DISCLAIMER: This software is decision support.  It does not diagnose or
treat any condition, and every blocked or flagged recommendation requires
review by a licensed clinician before any action is taken.
"""

__version__ = "0.1.0"
