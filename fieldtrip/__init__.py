"""fieldtrip - live field-trip tracking with distance and time accounting."""

__version__ = "0.1.0"
