"""Textile parsing: block tokenizer, slugs and link extraction."""

from .links import LinkComputer, LinkDefinitionSet
from .slugify import slugify
from .tokenizer import BlockKind, BlockToken, TextileTokenizer

__all__ = [
    "BlockKind",
    "BlockToken",
    "LinkComputer",
    "LinkDefinitionSet",
    "TextileTokenizer",
    "slugify",
]
