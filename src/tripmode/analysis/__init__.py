"""Model fitting and report rendering."""
