"""Go to the ``[name]href`` definition of a reference link."""

from __future__ import annotations

from .concurrency import NOOP_TOKEN, CancellationToken
from .document import TextDocument
from .models import Location, Position
from .references import ReferencesProvider


class DefinitionProvider:
    def __init__(self, references_provider: ReferencesProvider):
        self._references = references_provider

    async def provide_definition(
        self,
        document: TextDocument,
        position: Position,
        token: CancellationToken = NOOP_TOKEN,
    ) -> Location | None:
        references = await self._references.get_references_at_position(document, position, token)
        for reference in references:
            if reference.kind == "link" and reference.is_definition:
                return reference.location
        return None
