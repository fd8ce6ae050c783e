"""
Customers module: record store, interaction log (notes), order ledger,
lifecycle engine and KPI aggregation.

- Pipeline stages are a fixed linear sequence: new < engaged < ordered < closed lost
- Stage, revenue and touchpoints are derived from note/order events
- Backward stage moves and revenue overrides require the admin role
- State-changing actions are recorded to the append-only audit trail
"""
