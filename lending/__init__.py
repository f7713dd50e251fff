"""Library Lending - Core Application Package

This package contains the lending backend modules:
- Borrowing orchestrator (library.py)
- Catalog accessor (catalog.py)
- Loan ledger (ledger.py)
- Borrow limit policy (policy.py)
- Account management (accounts.py)
- API endpoints (api.py) and CLI (cli.py)
- Data models (models.py) and database layer (database.py)
"""

__version__ = "1.0.0"
