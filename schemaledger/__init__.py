"""
schemaledger: ordered, exactly-once schema migrations with a ledger and
lease inside the target database.
"""

__version__ = '1.0.0'
