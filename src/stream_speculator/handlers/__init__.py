"""Task handlers, one module per domain area, bound to the context by ``routing``."""
