"""Library circulation - loan lifecycle and inventory consistency.

Modules:
- Inventory ledger, the only writer of copies on loan (inventory.py)
- Loan state machine and fines (loans.py, fines.py)
- Catalog boundary (catalog.py)
- HTTP API (api.py) and CLI (cli.py)
- Database layer (database.py)
"""
