"""Screenshot worker that renders queued mail tests in Apple Mail."""
from __future__ import annotations

__version__ = "1.0.0"
