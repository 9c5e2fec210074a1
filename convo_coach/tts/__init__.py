"""Speech playback adapters."""
