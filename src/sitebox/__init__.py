"""SiteBox - local WordPress site orchestration."""

__version__ = "0.1.0"
