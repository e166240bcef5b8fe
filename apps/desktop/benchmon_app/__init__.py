"""benchmon command-line application."""
