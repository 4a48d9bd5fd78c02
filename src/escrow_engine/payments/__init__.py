"""Payment admission: gateway webhook handling."""
