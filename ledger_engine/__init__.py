"""
Ledger Engine - Source Package

The consistency core of a personal-finance tracker. It keeps account
balances, recurring obligations, currency conversions and budget alerts
in agreement with the transactions they are derived from.

DESIGN PRINCIPLES:
1. An account balance always equals the sum of its transactions
2. Every balance-affecting change is one atomic unit of work
3. Money is Decimal, never float
4. Fail loudly, never silently correct
5. Every significant step is auditable
"""

__version__ = "1.0.0"
__author__ = "Ledger Engine Team"
