"""
crudguard - a CRUD HTTP service behind a password / token / role / rate-limit guard.
"""

__version__ = "0.1.0"
