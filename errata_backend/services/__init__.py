"""Services for the Errata investigation core."""
