"""Detect the architectural layer, topics and technologies of a task description.

All providers share one interface: a keyword heuristic that always works, a
local Ollama model, and OpenAI-compatible cloud models (OpenAI, OpenRouter).
``create_context_provider`` picks one from the config and falls back to the
heuristic when the model is misconfigured or not reachable.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Protocol, Sequence, Tuple

import requests
from pydantic import BaseModel, Field, ValidationError, field_validator

from models import LAYER_SEQUENCE, WILDCARD_LAYER, DetectedContext

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 0.9
MAX_KEYWORDS = 10

VALID_LAYERS = LAYER_SEQUENCE + (WILDCARD_LAYER,)

LAYER_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "1-Presentation": (
        "ui", "frontend", "component", "view", "template", "render", "display",
        "react", "vue", "angular", "svelte", "html", "css", "javascript", "typescript",
        "jsx", "tsx", "scss", "sass", "styled-components",
        "button", "form", "input", "modal", "dialog", "menu", "navigation",
        "responsive", "mobile", "desktop", "layout", "grid", "flexbox",
        "animation", "transition", "theme", "styling", "design-system",
    ),
    "2-Application": (
        "service", "controller", "handler", "middleware", "router", "endpoint",
        "api", "rest", "graphql", "websocket", "http", "request", "response",
        "validation", "authentication", "authorization", "session", "jwt", "oauth",
        "business-logic", "workflow", "orchestration", "coordination",
        "express", "fastify", "nestjs", "spring", "django", "flask", "fastapi",
        "microservice", "serverless", "lambda",
    ),
    "3-Domain": (
        "domain", "entity", "aggregate", "value-object", "business-rule",
        "model", "schema", "interface", "class",
        "calculation", "algorithm", "logic", "rule", "policy", "constraint",
        "event", "command", "specification", "factory", "builder",
        "ddd", "domain-driven", "clean-architecture", "hexagonal",
    ),
    "4-Persistence": (
        "database", "db", "sql", "nosql", "query", "table", "collection",
        "repository", "dao", "orm", "migration", "index",
        "transaction", "acid", "consistency", "isolation", "durability",
        "mysql", "postgresql", "mongodb", "sqlite", "sqlalchemy",
        "prisma", "typeorm", "sequelize", "mongoose", "knex",
        "crud", "insert", "select", "join",
    ),
    "5-Infrastructure": (
        "infrastructure", "deployment", "deploy", "devops", "ci-cd", "pipeline",
        "docker", "kubernetes", "container", "cluster",
        "aws", "azure", "gcp", "cloud", "cdn",
        "monitoring", "logging", "metrics", "alerting", "observability",
        "encryption", "ssl", "tls", "firewall", "vpc", "network",
        "cache", "redis", "memcached", "queue", "message-broker", "kafka",
        "terraform", "ansible", "helm", "nginx",
    ),
}

TOPIC_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "security": (
        "security", "auth", "authentication", "authorization", "permission",
        "jwt", "oauth", "saml", "encryption", "hash", "salt", "bcrypt",
        "ssl", "tls", "https", "csrf", "xss", "injection", "vulnerability",
        "firewall", "sanitize", "escape",
    ),
    "api": (
        "api", "rest", "restful", "graphql", "endpoint", "route", "handler",
        "request", "response", "http", "json", "swagger", "openapi", "versioning",
    ),
    "database": (
        "database", "db", "sql", "query", "table", "schema", "migration",
        "index", "transaction", "orm", "repository", "crud", "join",
    ),
    "testing": (
        "test", "testing", "unit-test", "integration-test", "e2e", "mock",
        "stub", "spy", "pytest", "jest", "cypress", "playwright",
        "assertion", "coverage", "tdd", "bdd",
    ),
    "performance": (
        "performance", "optimization", "optimize", "cache", "caching", "lazy-loading",
        "pagination", "throttle", "debounce", "memoization", "benchmark",
        "profiling", "memory", "cpu", "latency", "throughput",
    ),
    "validation": (
        "validation", "validate", "schema", "constraint", "check",
        "sanitize", "format", "type-check", "required",
    ),
    "error-handling": (
        "error", "exception", "try-catch", "throw", "handling", "recovery",
        "fallback", "retry", "circuit-breaker", "timeout",
    ),
}

TECHNOLOGY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "React": ("react", "jsx", "tsx", "hooks"),
    "Vue": ("vue", "vuejs", "nuxt"),
    "Angular": ("angular",),
    "Node.js": ("node", "nodejs", "npm", "yarn", "express", "fastify"),
    "Python": ("python", "django", "flask", "fastapi", "pip", "conda"),
    "Java": ("java", "spring", "maven", "gradle", "jvm"),
    "C#": ("csharp", "dotnet", ".net", "asp.net", "nuget"),
    "Go": ("golang", "goroutine"),
    "Rust": ("rust", "cargo", "tokio", "actix"),
    "Docker": ("docker", "dockerfile", "docker-compose"),
    "Kubernetes": ("kubernetes", "k8s", "helm"),
    "AWS": ("aws", "ec2", "s3", "rds", "dynamodb", "cloudformation"),
    "PostgreSQL": ("postgresql", "postgres", "psql"),
    "MongoDB": ("mongodb", "mongo", "mongoose"),
    "Redis": ("redis",),
    "GraphQL": ("graphql", "apollo", "resolver"),
    "TypeScript": ("typescript",),
    "Jest": ("jest",),
    "Cypress": ("cypress",),
}

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
        "by", "from", "up", "about", "into", "through", "during", "before", "after",
        "above", "below", "between", "among", "is", "are", "was", "were", "be", "been",
        "being", "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "can", "this", "that", "these", "those",
    }
)

_PUNCTUATION_RE = re.compile(r"[^\w\s.-]")


class ContextDetectionError(RuntimeError):
    """Raised when a provider cannot produce a context for the given text."""


class ContextProvider(Protocol):
    name: str

    def is_available(self) -> bool:
        ...

    def detect_context(self, text: str) -> DetectedContext:
        ...


def _tokenize(text: str) -> List[str]:
    cleaned = _PUNCTUATION_RE.sub(" ", text.lower())
    return [word.strip(".") for word in cleaned.split() if word.strip(".")]


def _word_pattern(keyword: str, prefix: bool) -> re.Pattern:
    tail = "" if prefix else r"(?![\w-])"
    return re.compile(r"(?<![\w.-])" + re.escape(keyword.lower()) + tail)


class RuleBasedContextProvider:
    """Keyword heuristic; always available."""

    name = "rule-based"

    def __init__(
        self,
        layer_keywords: Dict[str, Sequence[str]] | None = None,
        topic_keywords: Dict[str, Sequence[str]] | None = None,
        technology_keywords: Dict[str, Sequence[str]] | None = None,
    ):
        self.layer_keywords = layer_keywords or LAYER_KEYWORDS
        self.topic_keywords = topic_keywords or TOPIC_KEYWORDS
        self.technology_keywords = technology_keywords or TECHNOLOGY_KEYWORDS

        # Layer and topic keywords also match as word prefixes ("component" in
        # "components"); technology names must match whole words.
        self._layer_patterns = {
            layer: [(kw, _word_pattern(kw, prefix=True)) for kw in kws]
            for layer, kws in self.layer_keywords.items()
        }
        self._topic_patterns = {
            topic: [_word_pattern(kw, prefix=True) for kw in kws]
            for topic, kws in self.topic_keywords.items()
        }
        self._tech_patterns = {
            tech: [_word_pattern(kw, prefix=False) for kw in kws]
            for tech, kws in self.technology_keywords.items()
        }
        self._max_layer_score = max((len(kws) * 2 for kws in self.layer_keywords.values()), default=1) or 1

    def is_available(self) -> bool:
        return True

    def detect_context(self, text: str) -> DetectedContext:
        normalized = (text or "").lower()
        words = _tokenize(normalized)
        word_set = set(words)

        layer, layer_confidence = self._detect_layer(word_set, normalized)
        topics = self._extract_topics(normalized)
        technologies = self._extract_technologies(normalized)
        keywords = self._extract_keywords(words)

        confidence = layer_confidence * 0.5
        confidence += min(len(topics) * 0.1, 0.3)
        confidence += min(len(technologies) * 0.05, 0.2)

        return DetectedContext(
            layer=layer,
            topics=topics,
            technologies=technologies,
            keywords=keywords,
            confidence=round(min(confidence, MAX_CONFIDENCE), 4),
            provider=self.name,
        )

    def _detect_layer(self, words: set, text: str) -> Tuple[str, float]:
        best_layer, best_score = WILDCARD_LAYER, 0
        for layer, patterns in self._layer_patterns.items():
            score = 0
            for keyword, pattern in patterns:
                if keyword in words:
                    score += 2
                if pattern.search(text):
                    score += 1
            # Strictly greater: on ties the earlier layer wins.
            if score > best_score:
                best_layer, best_score = layer, score
        if best_score == 0:
            return WILDCARD_LAYER, 0.1
        return best_layer, min(best_score / self._max_layer_score, 1.0)

    def _extract_topics(self, text: str) -> List[str]:
        topics = []
        for topic, patterns in self._topic_patterns.items():
            hits = sum(1 for pattern in patterns if pattern.search(text))
            if patterns and hits >= min(2, len(patterns)):
                topics.append(topic)
        return topics

    def _extract_technologies(self, text: str) -> List[str]:
        return [
            tech
            for tech, patterns in self._tech_patterns.items()
            if any(pattern.search(text) for pattern in patterns)
        ]

    @staticmethod
    def _extract_keywords(words: Sequence[str]) -> List[str]:
        keywords: List[str] = []
        for word in words:
            if len(word) > 2 and word not in STOP_WORDS and word[0].isalpha() and word not in keywords:
                keywords.append(word)
                if len(keywords) >= MAX_KEYWORDS:
                    break
        return keywords


class ModelContextResponse(BaseModel):
    layer: str = WILDCARD_LAYER
    topics: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    technologies: List[str] = Field(default_factory=list)
    confidence: float = 0.5

    @field_validator("layer", mode="before")
    @classmethod
    def _known_layer(cls, value: Any) -> str:
        return value if value in VALID_LAYERS else WILDCARD_LAYER

    @field_validator("topics", "keywords", "technologies", mode="before")
    @classmethod
    def _strings_only(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [v for v in value if isinstance(v, str)]

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamped(cls, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.5
        return max(0.0, min(1.0, float(value)))


PROMPT_TEMPLATE = """You are a software architect. Analyze this development task and respond with JSON only:

Task: "{text}"

Respond with this exact JSON format:
{{
  "layer": "1-Presentation|2-Application|3-Domain|4-Persistence|5-Infrastructure|6-Integration|*",
  "topics": ["security", "api", "database", "testing", "performance"],
  "keywords": ["key", "terms"],
  "technologies": ["React", "Node.js", "PostgreSQL"],
  "confidence": 0.8
}}

Layers:
- 1-Presentation: UI, frontend, components, styling
- 2-Application: API, services, controllers, middleware
- 3-Domain: Business logic, entities, models
- 4-Persistence: Database, storage, repositories
- 5-Infrastructure: Deployment, DevOps, monitoring
- 6-Integration: Third-party APIs, webhooks, messaging between systems
- *: General/unclear

JSON only:"""

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def parse_model_response(content: str) -> ModelContextResponse:
    """Pull the first JSON object out of a model reply, tolerating code fences."""
    cleaned = content.strip().replace("```json", "").replace("```", "")
    match = _JSON_OBJECT_RE.search(cleaned)
    raw = match.group(0) if match else cleaned
    try:
        return ModelContextResponse.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        raise ContextDetectionError(f"Unparseable model response: {exc}") from exc


def _to_detected(parsed: ModelContextResponse, provider: str) -> DetectedContext:
    return DetectedContext(
        layer=parsed.layer,
        topics=parsed.topics,
        technologies=parsed.technologies,
        keywords=parsed.keywords,
        confidence=parsed.confidence,
        provider=provider,
    )


class OllamaContextProvider:
    """Context detection through a local Ollama server."""

    name = "ollama"

    def __init__(
        self,
        model: str,
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 10.0,
        max_tokens: int = 150,
        temperature: float = 0.1,
        session: requests.Session | None = None,
    ):
        if not model:
            raise ValueError("Ollama model name is required")
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.session = session or requests.Session()

    def is_available(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}/api/tags", timeout=self.timeout)
            response.raise_for_status()
            models = response.json().get("models", [])
        except (requests.RequestException, ValueError) as exc:
            logger.debug("Ollama not reachable at %s: %s", self.base_url, exc)
            return False
        return any(
            m.get("name") == self.model or str(m.get("name", "")).startswith(self.model + ":")
            for m in models
        )

    def detect_context(self, text: str) -> DetectedContext:
        payload = {
            "model": self.model,
            "prompt": PROMPT_TEMPLATE.format(text=text),
            "stream": False,
            "options": {
                "num_predict": self.max_tokens,
                "temperature": self.temperature,
                "stop": ["\n\n", "```"],
            },
        }
        try:
            response = self.session.post(f"{self.base_url}/api/generate", json=payload, timeout=self.timeout)
            response.raise_for_status()
            content = response.json().get("response")
        except (requests.RequestException, ValueError) as exc:
            raise ContextDetectionError(f"Ollama context detection failed: {exc}") from exc
        if not content:
            raise ContextDetectionError("No response content from Ollama")

        return _to_detected(self.parse_response(content), self.name)

    parse_response = staticmethod(parse_model_response)


SYSTEM_PROMPT = (
    "You are an expert software architect. Analyze the given task description "
    "and return a JSON response with the architectural context."
)

OPENAI_URL = "https://api.openai.com/v1"
OPENROUTER_URL = "https://openrouter.ai/api/v1"


class OpenAIContextProvider:
    """Context detection through an OpenAI-compatible chat completions API.

    Works against OpenAI itself and against compatible gateways such as
    OpenRouter; only the base URL, model and key differ.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-3.5-turbo",
        base_url: str = OPENAI_URL,
        timeout: float = 5.0,
        max_tokens: int = 150,
        temperature: float = 0.1,
        name: str = "openai",
        session: requests.Session | None = None,
    ):
        if not api_key:
            raise ValueError(f"{name} API key is required")
        if not model:
            raise ValueError(f"{name} model name is required")
        self.name = name
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.session = session or requests.Session()

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def is_available(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}/models", headers=self._headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.debug("%s API not reachable at %s: %s", self.name, self.base_url, exc)
            return False
        return True

    def detect_context(self, text: str) -> DetectedContext:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": PROMPT_TEMPLATE.format(text=text)},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }
        try:
            response = self.session.post(
                f"{self.base_url}/chat/completions", json=payload, headers=self._headers, timeout=self.timeout
            )
            response.raise_for_status()
            choices = response.json().get("choices") or [{}]
            content = (choices[0].get("message") or {}).get("content")
        except (requests.RequestException, ValueError, AttributeError) as exc:
            raise ContextDetectionError(f"{self.name} context detection failed: {exc}") from exc
        if not content:
            raise ContextDetectionError(f"No response content from {self.name}")

        return _to_detected(parse_model_response(content), self.name)


def _build_model_provider(choice: str, config):
    if choice == "ollama":
        return OllamaContextProvider(
            model=config.ollama_model,
            base_url=config.ollama_url,
            timeout=config.ollama_timeout,
        )
    if choice in ("openai", "openrouter"):
        default_url = OPENAI_URL if choice == "openai" else OPENROUTER_URL
        return OpenAIContextProvider(
            api_key=config.cloud_api_key,
            model=config.cloud_model or ("gpt-3.5-turbo" if choice == "openai" else "microsoft/wizardlm-2-8x22b"),
            base_url=config.cloud_url or default_url,
            timeout=config.cloud_timeout,
            name=choice,
        )
    return None


def create_context_provider(config) -> ContextProvider:
    """Build the configured provider, falling back to the keyword heuristic."""
    choice = (config.context_provider or "rule-based").strip().lower()
    if choice == "rule-based":
        return RuleBasedContextProvider()

    try:
        provider = _build_model_provider(choice, config)
    except ValueError as exc:
        logger.warning("Context provider %r misconfigured (%s); using rule-based context detection", choice, exc)
        return RuleBasedContextProvider()
    if provider is None:
        logger.warning("Unknown context provider %r; using rule-based context detection", choice)
        return RuleBasedContextProvider()
    if provider.is_available():
        logger.info("Using %s context provider (%s)", provider.name, provider.model)
        return provider
    logger.warning("%s model %s unavailable; using rule-based context detection", provider.name, provider.model)
    return RuleBasedContextProvider()
