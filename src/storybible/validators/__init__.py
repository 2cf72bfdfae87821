"""Schema models and output checks for the story bible pipeline."""
