"""Generate remediation plans from security findings reports and mapping rules, and execute them."""

__version__ = "0.1.0"