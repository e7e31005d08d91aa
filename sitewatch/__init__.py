"""sitewatch — scheduled website checks with run history, incidents and uptime."""

__version__ = "0.1.0"
