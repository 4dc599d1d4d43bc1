"""jotx - local digital memory for clipboard and shell activity."""

__version__ = "0.1.0"
