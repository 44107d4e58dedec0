"""Apple TV connectivity bridge built on pyatv."""
