"""qmdtree: lossless Quarto source <-> JATS <-> editor tree conversion."""

__version__ = "0.1.0"
