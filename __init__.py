"""
Inbound Triage Engine v1.0 - Tiered Model Routing with Analyzer Consensus

Turns inbound customer email into routed, analysed and reconciled work items:
a durable priority queue feeds a pool of workers, each attempt is scored for
complexity, routed to a cost tier, analysed by concurrent specialist
analyzers and either auto-completed or sent to human review.

Features:
- Lease-based priority queue with PostgreSQL or in-memory backend
- Complexity scoring with forced escalation for live-data questions
- Concurrent analyzers with bounded peer exchange
- Deterministic confidence-weighted consensus
- Review workflow with SLA deadlines and corrective requeue
- Feedback learning that biases future routing
"""

__version__ = "1.0.0"
__author__ = "Triage Engine Team"
