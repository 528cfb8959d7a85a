"""
Donor Sync Service

Synchronizes donations from the donation platform into DonorPerfect:
- Donor matching by email (or creation)
- Gifts for one-time donations, pledges + linked gifts for recurring ones
- Durable sync log for idempotency and a subscription -> pledge map
- Paced, resumable backfill with dry-run preview
"""

__version__ = "1.0.0"
