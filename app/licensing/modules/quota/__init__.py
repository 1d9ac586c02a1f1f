"""
Importer accounts and the quota ledger.
"""
