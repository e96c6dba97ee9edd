"""Windows installation media builder.

Turns a stock Windows ISO into a customized bootable ISO: extraction,
WIM/ESD conversion, answer-file and driver injection, and repackaging.
"""

from .__version__ import __version__


__all__ = ["__version__"]
