"""Product catalog collaborators (listing status only)."""
