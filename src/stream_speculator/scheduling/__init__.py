"""Task models, delay calculation, admission and dispatch."""
