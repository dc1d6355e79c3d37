"""
approvals/workflow

Workflow engine for staged approvals.

Modules:
- financials: per-line VAT/subtotal and record totals (pure)
- sequence:   PREFIX-YYYY-NNNNN identifiers
- gate:       guarded stage transitions (conditional updates, row locks)
- payments:   payment request chain (accountant -> manager -> ERP sync)
- acceptance: order / quotation acceptance chains
"""
