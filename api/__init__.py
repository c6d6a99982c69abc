"""HTTP surface for the Event Gateway."""
