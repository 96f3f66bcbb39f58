"""Lending - library borrowing/return service

This package contains the application modules including:
- Records (book.py, borrower.py, loan.py)
- Inventory ledger (inventory.py)
- Borrower aggregate (borrowers.py)
- Borrowing coordinator (coordinator.py)
- Library facade (library.py)
- Database layer and unit of work (database.py)
- API endpoints (api.py)
- CLI interface (main.py)
"""

__version__ = "1.0.0"
