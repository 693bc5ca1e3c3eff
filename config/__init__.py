"""Settings loading for pitch-council."""
