"""
Document tool: drafts a text/code/sheet document with the artifact model.

The draft streams to the UI over the side channel while the tool runs:
    id, title, kind, clear, text-delta (repeated), finish
The model itself only gets a short confirmation, not the content.
"""

import logging

from chatrelay.errors import UpstreamUnavailable
from chatrelay.invoker import SSE_DONE, parse_sse_line
from chatrelay.prompts import document_prompt
from chatrelay.storage.models import Document

logger = logging.getLogger(__name__)

DOCUMENT_KINDS = ("text", "code", "sheet")


class CreateDocumentTool:
    name = "create_document"
    description = (
        "Create a document for writing or content creation activities. "
        "The content is generated from the title and kind."
    )
    parameters = {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "kind": {"type": "string", "enum": list(DOCUMENT_KINDS)},
        },
        "required": ["title", "kind"],
    }

    def __init__(self, backend, model: str, store):
        self.backend = backend
        self.model = model
        self.store = store

    async def _draft(self, title: str, kind: str, context) -> str:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": document_prompt(kind)},
                {"role": "user", "content": title},
            ],
        }
        content = []
        async for line in self.backend.forward_stream(body):
            chunk = parse_sse_line(line)
            if chunk is None:
                continue
            if chunk is SSE_DONE:
                break
            if chunk.get("error"):
                raise UpstreamUnavailable(str(chunk["error"]))
            choices = chunk.get("choices") or [{}]
            delta = (choices[0].get("delta") or {}).get("content") or ""
            if delta:
                content.append(delta)
                context.emit(self.name, "text-delta", delta)
        return "".join(content)

    async def execute(self, arguments: dict, context) -> dict:
        title = str(arguments.get("title", "")).strip() or "Untitled"
        kind = arguments.get("kind", "text")
        if kind not in DOCUMENT_KINDS:
            raise ValueError(f"Unsupported document kind: {kind}")

        doc = Document(user_id=context.user_id, title=title, kind=kind)
        context.emit(self.name, "id", doc.id)
        context.emit(self.name, "title", title)
        context.emit(self.name, "kind", kind)
        context.emit(self.name, "clear", "")

        try:
            doc.content = await self._draft(title, kind, context)
        except UpstreamUnavailable:
            logger.warning("Document draft failed for %s", doc.id)
            raise

        self.store.save_document(doc)
        context.emit(self.name, "finish", "")

        return {
            "id": doc.id,
            "title": title,
            "kind": kind,
            "content": "A document was created and is now visible to the user.",
        }
