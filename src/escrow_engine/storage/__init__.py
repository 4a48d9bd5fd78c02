"""Order aggregate persistence and sweep locks."""
