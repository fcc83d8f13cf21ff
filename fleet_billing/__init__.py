"""
Fleet Billing

Installment financing and billing ledger for a vehicle dealership / fleet
operator: quota schedules, payment allocation with carried credit, late fees
and the batch passes that keep the ledger current. All money uses Decimal.
"""

__version__ = "1.0.0"
