"""
M365 Audit & Risk Export
========================
Runs Unified Audit Log searches and Identity Protection queries against
Microsoft Graph and streams the results to JSON/CSV files.

Read-only: the only write-method request sent is the audit log query creation.
"""

__version__ = "1.0.0"
