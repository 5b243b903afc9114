"""
Integration credential and token lifecycle management.

Stores, encrypts, exchanges, refreshes and validates OAuth credentials for
external ticketing/ITSM systems (e.g. ServiceNow).
"""

__version__ = "0.1.0"
