"""Lending Library - Core Application Package

This package contains the borrow/return subsystem of a library catalog:
- API endpoints (api.py)
- Catalog management and queries (library.py)
- Borrow/return coordination (lending.py)
- Borrower accounts and authentication (accounts.py, security.py)
- Data models (book.py, account.py)
- Database layer (database.py)
- CLI interface (main.py)
"""
