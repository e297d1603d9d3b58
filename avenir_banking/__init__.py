"""
Avenir Banking Core

Domain core of a multi-role online bank (client, advisor, director):
accounts with IBANs, double-entry transfers, savings interest, credits,
a stock order book, notifications and private messaging. All monetary
values use Decimal and every state change is audited.
"""

__version__ = "1.0.0"
