"""
Prompt composition for the shopping assistant.

compose() is pure: identical inputs give identical instructions. The product
block is always present; when retrieval found nothing it says so explicitly
so the model does not invent catalog data.
"""

from __future__ import annotations

from dataclasses import dataclass

from chatrelay.retrieval import ContextSnippet

# ---------------------------------------------------------------------------
# Prompt text
# ---------------------------------------------------------------------------

PERSONA = """\
You are a cheerful and enthusiastic e-commerce assistant. You help customers \
search for products, recommend items, answer order questions and guide users \
through their shopping journey. Be upbeat and clear.

Only mention products that appear in the product catalog context below or in \
a search_products tool result. Never make up product names, prices or stock levels."""

ARTIFACTS_PROMPT = """\
Artifacts is a special user interface mode that helps users with writing, \
editing, and other content creation tasks in real time. When an artifact is \
open it is on the right side of the screen, while the conversation is on the left.

When asked to write a longer document, a code snippet or a spreadsheet, use the \
create_document tool. DO NOT UPDATE DOCUMENTS IMMEDIATELY AFTER CREATING THEM. \
WAIT FOR USER FEEDBACK OR A REQUEST TO UPDATE."""

NO_CONTEXT_MARKER = """\
Product catalog context: NO MATCHING PRODUCTS FOUND.
No catalog entries matched this request. Do not invent products, prices or \
stock levels; say that nothing matched, or use the search_products tool."""

TITLE_PROMPT = """\
You will generate a short title based on the first message a user begins a \
conversation with. Keep it under 80 characters. The title is a summary of the \
user's message. Do not use quotes or colons."""

_DOCUMENT_PROMPTS = {
    "text": "Write about the given topic. Markdown is supported. Use headings wherever appropriate.",
    "code": (
        "You are a code generator. Write a complete, runnable, self-contained snippet "
        "for the given request. Keep it concise and reply with code only."
    ),
    "sheet": (
        "You are a spreadsheet assistant. Create CSV data for the given request "
        "with meaningful column headers. Reply with CSV only."
    ),
}


@dataclass(frozen=True)
class RequestHints:
    """Where the request came from, as reported by the edge."""
    latitude: str | None = None
    longitude: str | None = None
    city: str | None = None
    country: str | None = None


def hints_prompt(hints: RequestHints) -> str:
    return (
        "About the origin of user's request:\n"
        f"- lat: {hints.latitude}\n"
        f"- lon: {hints.longitude}\n"
        f"- city: {hints.city}\n"
        f"- country: {hints.country}"
    )


def _format_amount(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def context_prompt(snippets: list[ContextSnippet], currency: str = "₹") -> str:
    """The product catalog block, or the explicit no-match marker."""
    if not snippets:
        return NO_CONTEXT_MARKER

    entries = []
    for s in sorted(snippets, key=lambda s: s.rank):
        price = f"{currency}{_format_amount(s.price)}" if s.price is not None else "Unknown"
        stock = s.stock if s.stock is not None else "Unknown"
        entries.append(
            f"Product ID: {s.product_id}\n"
            f"Name: {s.name}\n"
            f"Description: {s.description or 'No description available'}\n"
            f"Price: {price}\n"
            f"Stock: {stock}\n"
            f"Category: {s.category or 'Uncategorized'}"
        )
    return (
        "Product catalog context (most relevant first):\n\n"
        + "\n---\n".join(entries)
    )


def compose(
    persona: str,
    hints: RequestHints,
    snippets: list[ContextSnippet],
    model_variant: str,
    reasoning: bool = False,
    currency: str = "₹",
) -> str:
    """
    Build the system instructions for one turn.

    Reasoning variants (reasoning=True, or a variant name ending in
    '-reasoning') still get the product context but not the artifacts
    instructions, since they run without tools.
    """
    sections = [persona, hints_prompt(hints), context_prompt(snippets, currency)]
    if not (reasoning or model_variant.endswith("-reasoning")):
        sections.append(ARTIFACTS_PROMPT)
    return "\n\n".join(sections)


def document_prompt(kind: str) -> str:
    return _DOCUMENT_PROMPTS.get(kind, _DOCUMENT_PROMPTS["text"])
