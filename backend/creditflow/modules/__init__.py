"""Application modules.

- ledger: Credit balances, purchases, refunds and grants
- job: Generation jobs and their credit reservations
- webhook: Payment provider events
- identity: Identity provider sync with circuit-breaker fallbacks
"""
