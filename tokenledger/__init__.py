"""
Token Ledger - Source Package

Shared prepaid-electricity ledger: tracks token purchases, the household
contributions settled against them, and what each member's usage really cost.

DESIGN PRINCIPLES:
1. Contributions follow purchases in strict chronological order
2. Derived figures (consumption, cost) are never typed in by hand
3. Fail early, fail visibly - errors block, warnings inform
4. Every mutation must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Token Ledger Team"
