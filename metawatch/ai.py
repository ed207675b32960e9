"""AI-assisted meta description suggestions.

Talks to Anthropic (``claude``) through the ``anthropic`` SDK or to xAI
(``grok``) through the ``openai`` SDK pointed at xAI's OpenAI-compatible
endpoint. Provider, model and keys come from :class:`~metawatch.config.Settings`.

Example::

    client = SuggestionClient()
    result = await client.generate_suggestions(
        "https://shop.example.com/tea", title="Loose leaf tea"
    )
    for suggestion in result.suggestions:
        print(suggestion.length, suggestion.text)
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

import anthropic
import openai
from bs4 import BeautifulSoup

from .analyzer import MAX_DESCRIPTION_LENGTH, MIN_DESCRIPTION_LENGTH
from .config import ScanOptions, Settings
from .errors import AIError
from .fetcher import PageFetcher

LOGGER = logging.getLogger(__name__)

PROVIDERS = ("claude", "grok")

GROK_BASE_URL = "https://api.x.ai/v1"

# USD per million tokens
INPUT_TOKEN_PRICE = 3.0
OUTPUT_TOKEN_PRICE = 15.0

MIN_SUGGESTION_LENGTH = 50
MAX_SUGGESTION_LENGTH = 200
MAX_CONTEXT_LENGTH = 2500
BULK_DELAY = 0.5
REQUEST_TIMEOUT = 60.0

_NUMBERED_LINE = re.compile(r"^\d+[.)]\s*(.+)$")
_EDGE_QUOTES = re.compile(r"^[\"']|[\"']$")
_HAS_LETTER = re.compile(r"[A-Za-z]")

PageLoader = Callable[[str], Awaitable[Optional[str]]]


@dataclass(slots=True)
class Suggestion:
    text: str

    @property
    def length(self) -> int:
        return len(self.text)

    @property
    def is_optimal(self) -> bool:
        return MIN_DESCRIPTION_LENGTH <= self.length <= MAX_DESCRIPTION_LENGTH

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "length": self.length, "isOptimal": self.is_optimal}


@dataclass(slots=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def estimated_cost(self) -> float:
        return estimate_cost(self.input_tokens, self.output_tokens)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "estimatedCost": self.estimated_cost,
        }


@dataclass(slots=True)
class Completion:
    text: str
    usage: Usage = field(default_factory=Usage)


@dataclass(slots=True)
class SuggestionResult:
    """Parsed suggestions plus the prompt that produced them."""

    suggestions: List[Suggestion]
    usage: Usage
    prompt: str = ""
    page_context: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestions": [item.to_dict() for item in self.suggestions],
            "usage": self.usage.to_dict(),
            "prompt": self.prompt,
            "pageContext": self.page_context,
        }


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    return (
        input_tokens / 1_000_000 * INPUT_TOKEN_PRICE
        + output_tokens / 1_000_000 * OUTPUT_TOKEN_PRICE
    )


def extract_page_context(html: Optional[str]) -> str:
    """Short plain-text digest of a page for the prompt.

    Headings, the first paragraph and either the product names of a category
    page (``.InfoArea h3``) or a product page's ``.description``.
    """
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.select("script, style, nav, header, footer"):
        tag.decompose()

    h1 = soup.find("h1")
    heading = h1.get_text().strip() if h1 else ""
    subheadings = [tag.get_text().strip() for tag in soup.find_all("h2")[:3]]
    paragraph = soup.find("p")
    first_paragraph = paragraph.get_text().strip()[:200] if paragraph else ""

    products = [
        text
        for text in (tag.get_text().strip() for tag in soup.select(".InfoArea h3"))
        if 3 < len(text) < 100 and _HAS_LETTER.search(text)
    ]
    description = soup.select_one(".description")
    product_description = description.get_text().strip()[:300] if description else ""

    lines: List[str] = []
    if heading:
        lines.append(f"Main Heading: {heading}")
    if subheadings:
        lines.append(f"Subheadings: {', '.join(subheadings)}")
    if first_paragraph:
        lines.append(f"Content: {first_paragraph}")
    if products:
        lines.append("")
        lines.append(f"This is a category/brand page with {len(products)} products:")
        lines.append(", ".join(products))
    elif product_description:
        lines.append(f"Product Description: {product_description}")

    context = "\n".join(lines) + "\n" if lines else ""
    return context[:MAX_CONTEXT_LENGTH]


def build_meta_prompt(
    url: str,
    title: Optional[str],
    current_meta: Optional[str],
    page_context: str = "",
    *,
    target_keyword: Optional[str] = None,
    count: int = 4,
) -> str:
    """Prompt asking for ``count`` numbered meta description options."""
    context_block = f"Page Content Summary:\n{page_context}\n" if page_context else ""
    keyword_line = (
        f'- Target keyword: "{target_keyword}" - include this naturally where relevant\n'
        if target_keyword
        else ""
    )
    return (
        "You are an expert SEO copywriter. Generate compelling meta descriptions "
        "based on the page information below.\n"
        "\n"
        f"URL: {url}\n"
        f"Page Title: {title or 'Not provided'}\n"
        f"Current Meta Description: {current_meta or 'None'}\n"
        "\n"
        f"{context_block}"
        "\n"
        "Requirements for meta descriptions:\n"
        f"- Length: {MIN_DESCRIPTION_LENGTH}-{MAX_DESCRIPTION_LENGTH} characters "
        "(optimal for Google search results)\n"
        "- Include the main product name, brand, or category ONCE in a natural way\n"
        f"{keyword_line}"
        "- Include other relevant keywords based on the page content\n"
        "- Avoid keyword stuffing and do not repeat words\n"
        "- Be specific and accurate to the page content\n"
        "- Include a call-to-action when appropriate\n"
        "- Each description must be unique with varied vocabulary\n"
        "\n"
        f"Generate {count} different meta description options with different approaches:\n"
        "1. Benefit-focused (emphasize user value)\n"
        "2. Action-oriented (strong call-to-action)\n"
        "3. Question-based (create curiosity)\n"
        "4. Feature-focused (highlight key features)\n"
        "\n"
        f"Format your response as a numbered list (1-{count}), with ONLY the meta "
        "description text for each. No explanations or labels."
    )


def parse_suggestions(response_text: str) -> List[Suggestion]:
    """Numbered lines of a model reply that have a usable length."""
    suggestions: List[Suggestion] = []
    for line in response_text.splitlines():
        match = _NUMBERED_LINE.match(line.strip())
        if not match:
            continue
        text = _EDGE_QUOTES.sub("", match.group(1).strip())
        if MIN_SUGGESTION_LENGTH <= len(text) <= MAX_SUGGESTION_LENGTH:
            suggestions.append(Suggestion(text=text))
    return suggestions


class SuggestionClient:
    """Provider-agnostic client for the suggestion prompts."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        provider: Optional[str] = None,
        client: Any = None,
        page_loader: Optional[PageLoader] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or Settings.from_env()
        self._client = client
        self._page_loader = page_loader or self._load_page
        self._sleep = sleep
        self.provider = ""
        self.switch_provider(provider or self.settings.ai_provider)

    @property
    def model(self) -> str:
        if self.provider == "grok":
            return self.settings.grok_model
        return self.settings.claude_model

    def switch_provider(self, provider: str) -> None:
        provider = (provider or "").strip().lower()
        if provider not in PROVIDERS:
            raise ValueError('Invalid provider. Must be "claude" or "grok"')
        self.provider = provider

    def _api_key(self) -> str:
        if self.provider == "grok":
            if not self.settings.grok_api_key:
                raise AIError("GROK_API_KEY is not set", provider=self.provider)
            return self.settings.grok_api_key
        if not self.settings.anthropic_api_key:
            raise AIError("ANTHROPIC_API_KEY is not set", provider=self.provider)
        return self.settings.anthropic_api_key

    def _sdk_client(self, api_key: str) -> Any:
        if self.provider == "grok":
            return openai.AsyncOpenAI(
                api_key=api_key, base_url=GROK_BASE_URL, timeout=REQUEST_TIMEOUT
            )
        return anthropic.AsyncAnthropic(api_key=api_key, timeout=REQUEST_TIMEOUT)

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Completion:
        """Send a single user message and return the reply text.

        Raises:
            AIError: Missing API key, API or connection error, or an
                unexpected response shape.
        """
        max_tokens = max_tokens or self.settings.ai_max_tokens
        temperature = self.settings.ai_temperature if temperature is None else temperature
        api_key = self._api_key()

        LOGGER.debug("Requesting completion from %s (%s)", self.provider, self.model)
        started = time.monotonic()
        if self._client is not None:
            completion = await self._request(self._client, prompt, max_tokens, temperature)
        else:
            async with self._sdk_client(api_key) as client:
                completion = await self._request(client, prompt, max_tokens, temperature)
        LOGGER.info(
            "%s response received in %.0fms", self.provider, (time.monotonic() - started) * 1000
        )
        return completion

    async def _request(
        self,
        client: Any,
        prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        messages = [{"role": "user", "content": prompt}]
        try:
            if self.provider == "grok":
                response = await client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=messages,
                )
            else:
                response = await client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=messages,
                )
        except (anthropic.APIStatusError, openai.APIStatusError) as exc:
            raise AIError(
                f"{self.provider} API error: {exc.status_code} - {exc.message}",
                provider=self.provider,
            ) from exc
        except (anthropic.APIError, openai.APIError) as exc:
            raise AIError(f"Request failed: {exc}", provider=self.provider) from exc

        try:
            return self._parse_completion(response)
        except (AttributeError, IndexError, TypeError) as exc:
            raise AIError(
                f"Unexpected response shape from {self.provider}", provider=self.provider
            ) from exc

    def _parse_completion(self, response: Any) -> Completion:
        usage = response.usage
        if self.provider == "grok":
            return Completion(
                text=response.choices[0].message.content or "",
                usage=Usage(
                    input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
                    output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
                ),
            )
        text = "".join(block.text for block in response.content if block.type == "text")
        return Completion(
            text=text,
            usage=Usage(
                input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
                output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
            ),
        )

    async def _load_page(self, url: str) -> Optional[str]:
        async with PageFetcher(ScanOptions(), self.settings) as fetcher:
            fetched = await fetcher.fetch(url)
        if not fetched.success:
            LOGGER.info("Could not fetch %s for context: %s", url, fetched.error)
            return None
        return fetched.html

    async def build_prompt(
        self,
        url: str,
        title: Optional[str] = None,
        current_meta: Optional[str] = None,
        *,
        target_keyword: Optional[str] = None,
    ) -> Dict[str, str]:
        """Fetch the page for context and return the prompt that would be sent."""
        page_context = extract_page_context(await self._page_loader(url))
        prompt = build_meta_prompt(
            url, title, current_meta, page_context, target_keyword=target_keyword
        )
        return {"prompt": prompt, "pageContext": page_context}

    async def generate_from_prompt(self, prompt: str, count: int = 5) -> SuggestionResult:
        completion = await self.complete(prompt)
        return SuggestionResult(
            suggestions=parse_suggestions(completion.text)[:count],
            usage=completion.usage,
            prompt=prompt,
        )

    async def generate_suggestions(
        self,
        url: str,
        title: Optional[str] = None,
        current_meta: Optional[str] = None,
        count: int = 5,
        *,
        target_keyword: Optional[str] = None,
    ) -> SuggestionResult:
        built = await self.build_prompt(url, title, current_meta, target_keyword=target_keyword)
        result = await self.generate_from_prompt(built["prompt"], count)
        result.page_context = built["pageContext"]
        return result

    async def generate_bulk(
        self,
        pages: Iterable[Mapping[str, Any]],
        per_page: int = 3,
    ) -> Dict[str, Any]:
        """Suggestions for several pages; a failing page does not stop the batch.

        Each mapping needs ``url`` and may carry ``title`` and
        ``metaDescription``.
        """
        report: Dict[str, Any] = {"totalProcessed": 0, "totalCost": 0.0, "pages": []}
        for page in pages:
            url = str(page.get("url") or "")
            try:
                result = await self.generate_suggestions(
                    url,
                    page.get("title"),
                    page.get("metaDescription") or page.get("currentMeta"),
                    per_page,
                )
            except AIError as exc:
                LOGGER.warning("Suggestion generation failed for %s: %s", url, exc)
                report["pages"].append({"url": url, "success": False, "error": str(exc)})
            else:
                report["pages"].append({"url": url, "success": True, **result.to_dict()})
                report["totalProcessed"] += 1
                report["totalCost"] += result.usage.estimated_cost
            await self._sleep(BULK_DELAY)
        return report

    async def analyze_description(self, meta_description: str) -> Dict[str, Any]:
        prompt = (
            "Analyze this meta description for SEO quality:\n"
            "\n"
            f'"{meta_description}"\n'
            "\n"
            "Provide a brief analysis (2-3 sentences) covering:\n"
            "- Does it include a clear call-to-action?\n"
            "- Are there relevant keywords?\n"
            "- Is the tone appropriate?\n"
            "- Any improvements needed?\n"
            "\n"
            "Keep your response concise and actionable."
        )
        completion = await self.complete(prompt, max_tokens=300, temperature=0.5)
        return {"analysis": completion.text, "usage": completion.usage.to_dict()}

    async def extract_keywords(self, meta_description: str) -> Dict[str, Any]:
        prompt = (
            "Extract the main SEO keywords from this meta description. Return ONLY a "
            "comma-separated list of keywords, nothing else:\n"
            "\n"
            f'"{meta_description}"'
        )
        completion = await self.complete(prompt, max_tokens=150, temperature=0.3)
        keywords = [word.strip() for word in completion.text.strip().split(",") if word.strip()]
        return {"keywords": keywords, "usage": completion.usage.to_dict()}

    async def test_connection(self) -> Dict[str, Any]:
        completion = await self.complete(
            'Say "API connection successful" and nothing else.', max_tokens=50
        )
        return {
            "message": f"{self.provider} API connected successfully",
            "provider": self.provider,
            "model": self.model,
            "response": completion.text,
        }
