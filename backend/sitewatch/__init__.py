"""SiteWatch - scheduled website monitoring."""
