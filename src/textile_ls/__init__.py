"""textile-ls: references, rename and link diagnostics for Textile documents."""

__version__ = "0.1.0"
