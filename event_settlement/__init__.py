"""
Event Settlement - paid event registration and QR check-in

The pipeline this package owns:
1. Payment ledger: a registration intent becomes a gateway order, and the
   gateway's (possibly duplicated) confirmation is verified idempotently
2. Registration commit: a verified payment becomes exactly one registration,
   its guests and an optional donation
3. QR credentials: one signed check-in token per confirmed registration
4. Check-in: gate devices scan tokens; the database adjudicates races

Everything else (profiles, groups, announcements, galleries) lives in other
services that call into this one or receive its outbox events.
"""

__version__ = "1.0.0"
