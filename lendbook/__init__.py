"""
Lendbook

Back office for a small lending business: loan origination, amortization
schedules, EMI collection, invoicing and document data. All financial math
uses Decimal with explicit rounding at every derived step.
"""

__version__ = "1.0.0"
