"""
Credit Ledger Module
Multi-tenant credit ledger and usage gating for metered AI access

This module provides:
- Credit pool resolution (personal wallet, organization allocation, family pool)
- Atomic allocation and transfer between organization pools and members
- Concurrency-safe usage debits (conditional updates, no negative balances)
- Parental preconditions for family child accounts (quiet hours, daily limits, trial)
- Append-only transaction log that reconciles with every pool balance

Collections used:
- organizations: Organization pools (credit_balance, credit_allocated)
- organization_members: Member allocations (credit_allocated, credit_used)
- profiles: Personal wallets and credit preference
- parental_controls: Family supervision settings per child
- organization_classes: Class grouping for bulk allocation
- organization_transactions: Immutable transaction log
- payment_events: Purchase idempotency store
- app_settings / ai_models: Versioned pricing configuration
"""

__version__ = "1.0.0"
