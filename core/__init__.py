"""Error taxonomy and pipeline wiring."""
