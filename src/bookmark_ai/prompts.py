"""System prompts and user-message renderers for each AI operation.

Everything here is pure: same input, same `Prompt`.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import NamedTuple, Protocol

CONTENT_CHAR_BUDGET = 2000
DESCRIPTION_CHAR_BUDGET = 1000
CANDIDATE_DESCRIPTION_CHAR_BUDGET = 300
TRUNCATION_MARKER = "...[truncated]"


class Prompt(NamedTuple):
    system: str
    user: str


class SearchCandidateLike(Protocol):
    id: str
    title: str
    url: str
    description: str | None
    tags: Sequence[str]
    category: str | None


SUMMARY_SYSTEM_PROMPT = """You are a helpful assistant that creates concise summaries of web content for a bookmarking application.

Your task is to generate a brief, informative summary that helps users quickly understand what a bookmarked page is about.

Guidelines:
- Keep summaries between 2-3 sentences (50-100 words)
- Focus on the main topic and key points
- Use clear, accessible language
- Avoid technical jargon unless necessary
- Do not include opinions or editorializing
- Do not mention the source/website name
- Write in third person

Respond with ONLY the summary text, no additional formatting or explanation."""

TAGS_SYSTEM_PROMPT = """You are a helpful assistant that suggests relevant tags for bookmarked web content.

Your task is to analyze the content and suggest 3-5 descriptive tags that would help users organize and find this bookmark later.

Guidelines:
- Suggest between 3-5 tags
- Tags should be lowercase, single words or short phrases (max 2-3 words)
- Use common, recognizable terms
- Consider the topic, type of content, and potential use cases
- Avoid overly specific or overly generic tags
- Prioritize tags that would be useful for categorization

Respond with a JSON object in this format:
{
  "tags": ["tag1", "tag2", "tag3"],
  "reasoning": "Brief explanation of why these tags were chosen"
}"""

CATEGORY_SYSTEM_PROMPT = """You are a helpful assistant that categorizes bookmarked web content.

Your task is to analyze the content and suggest the most appropriate category from the user's existing categories.

Guidelines:
- Select exactly ONE category from the provided list
- Consider the primary purpose and topic of the content
- If no category is a good fit, choose the closest match and lower your confidence
- Provide a confidence score (0.0 to 1.0) for your suggestion
- Higher confidence means you're more certain about the match

Respond with a JSON object in this format:
{
  "category": "Category Name",
  "confidence": 0.85,
  "reasoning": "Brief explanation of why this category was chosen"
}"""

SEMANTIC_SEARCH_SYSTEM_PROMPT = """You are a helpful assistant that performs semantic search over a collection of bookmarks.

Your task is to analyze the user's search query and rank the provided bookmarks by relevance.

Guidelines:
- Consider semantic meaning, not just keyword matching
- Rank bookmarks from most to least relevant
- Include a relevance score (0.0 to 1.0) for each bookmark
- Only include bookmarks with relevance > 0.3
- Only use bookmark IDs from the provided list
- Consider synonyms, related concepts, and user intent
- If no bookmarks are relevant, return an empty array

Respond with a JSON object in this format:
{
  "results": [
    { "id": "bookmark-id", "score": 0.95, "reason": "Brief explanation" },
    { "id": "bookmark-id", "score": 0.85, "reason": "Brief explanation" }
  ],
  "interpretation": "How you interpreted the search query"
}"""


def truncate(text: str, budget: int) -> str:
    if len(text) <= budget:
        return text
    return text[:budget] + TRUNCATION_MARKER


def _header(title: str, url: str, description: str | None) -> list[str]:
    parts = [f"Title: {title}", f"URL: {url}"]
    if description:
        parts.append(f"Description: {truncate(description, DESCRIPTION_CHAR_BUDGET)}")
    return parts


def build_summary_prompt(*, title: str, url: str, description: str | None = None, content: str | None = None) -> Prompt:
    parts = _header(title, url, description)
    if content:
        parts.append(f"Content preview: {truncate(content, CONTENT_CHAR_BUDGET)}")
    return Prompt(SUMMARY_SYSTEM_PROMPT, "\n\n".join(parts))


def build_tags_prompt(
    *,
    title: str,
    url: str,
    description: str | None = None,
    existing_tags: Sequence[str] = (),
) -> Prompt:
    parts = _header(title, url, description)
    if existing_tags:
        parts.append(f"User's existing tags (for context): {', '.join(existing_tags)}")
        parts.append("Try to use existing tags when appropriate, but don't force it.")
    return Prompt(TAGS_SYSTEM_PROMPT, "\n\n".join(parts))


def build_category_prompt(
    *,
    title: str,
    url: str,
    categories: Sequence[str],
    description: str | None = None,
) -> Prompt:
    parts = _header(title, url, description)
    parts.append(f"Available categories: {', '.join(categories)}")
    parts.append("Select the most appropriate category from the list above.")
    return Prompt(CATEGORY_SYSTEM_PROMPT, "\n\n".join(parts))


def _render_candidate(index: int, candidate: SearchCandidateLike) -> str:
    lines = [
        f"{index}. ID: {candidate.id}",
        f"   Title: {candidate.title}",
        f"   URL: {candidate.url}",
    ]
    if candidate.description:
        lines.append(f"   Description: {truncate(candidate.description, CANDIDATE_DESCRIPTION_CHAR_BUDGET)}")
    if candidate.tags:
        lines.append(f"   Tags: {', '.join(candidate.tags)}")
    if candidate.category:
        lines.append(f"   Category: {candidate.category}")
    return "\n".join(lines)


def build_search_prompt(*, query: str, candidates: Sequence[SearchCandidateLike]) -> Prompt:
    listing = "\n\n".join(_render_candidate(i, c) for i, c in enumerate(candidates, start=1))
    return Prompt(SEMANTIC_SEARCH_SYSTEM_PROMPT, f'Search query: "{query}"\n\nBookmarks to search:\n{listing}')
