"""Configuration and CLI helpers for the opposing views pipeline."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml


@dataclass
class Config:
    db_path: Path = Path("./articles.db")
    primary_provider: str = "ollama"
    fallback_provider: Optional[str] = "claude"
    ollama_api_base: str = "http://localhost:11434"
    ollama_model: str = "llama3"
    claude_api_base: str = "https://api.anthropic.com"
    claude_model: str = "claude-sonnet-4-20250514"
    anthropic_api_key: Optional[str] = None
    grok_api_base: str = "https://api.x.ai/v1"
    grok_model: str = "grok-4.1-fast"
    grok_api_key: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 1024
    tiktoken_encoding: Optional[str] = "cl100k_base"
    max_input_tokens: int = 3000
    provider_timeout_seconds: float = 60.0
    provider_attempts: int = 2
    max_providers: int = 2
    provider_retry_backoff_seconds: float = 2.0
    batch_size: int = 4
    analysis_batch_limit: int = 10
    analysis_enabled: bool = True
    max_queries: int = 3
    search_top_k: int = 10
    search_pool_size: int = 500
    search_timeout_seconds: float = 10.0
    min_relevance: float = 0.3
    max_links_per_article: int = 5
    bias_weight: float = 0.4

    def provider_chain(self) -> list[str]:
        """Ordered provider identifiers to try for a single analysis."""
        chain = [self.primary_provider]
        if self.fallback_provider and self.fallback_provider != self.primary_provider:
            chain.append(self.fallback_provider)
        return chain[: max(1, self.max_providers)]

    @staticmethod
    def from_yaml(path: Path) -> "Config":
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}

        primary = str(data.get("primary_provider", "ollama")).strip().lower()
        if not primary:
            raise ValueError("Config must define 'primary_provider' (e.g. 'ollama' or 'claude').")
        fallback_value = data.get("fallback_provider", "claude")
        fallback = str(fallback_value).strip().lower() if fallback_value else None

        min_relevance = float(data.get("min_relevance", 0.3))
        if not 0.0 <= min_relevance <= 1.0:
            raise ValueError(f"min_relevance must be within [0, 1], got {min_relevance}")
        bias_weight = float(data.get("bias_weight", 0.4))
        if not 0.0 <= bias_weight <= 1.0:
            raise ValueError(f"bias_weight must be within [0, 1], got {bias_weight}")

        return Config(
            db_path=Path(data.get("db_path", "./articles.db")),
            primary_provider=primary,
            fallback_provider=fallback,
            ollama_api_base=data.get("ollama_api_base", "http://localhost:11434"),
            ollama_model=data.get("ollama_model", "llama3"),
            claude_api_base=data.get("claude_api_base", "https://api.anthropic.com"),
            claude_model=data.get("claude_model", "claude-sonnet-4-20250514"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            grok_api_base=data.get("grok_api_base", "https://api.x.ai/v1"),
            grok_model=data.get("grok_model", "grok-4.1-fast"),
            grok_api_key=os.getenv("GROK_API_KEY"),
            temperature=float(data.get("temperature", 0.0)),
            max_tokens=int(data.get("max_tokens", 1024)),
            tiktoken_encoding=data.get("tiktoken_encoding", "cl100k_base"),
            max_input_tokens=int(data.get("max_input_tokens", 3000)),
            provider_timeout_seconds=float(data.get("provider_timeout_seconds", 60.0)),
            provider_attempts=max(1, int(data.get("provider_attempts", 2))),
            max_providers=max(1, int(data.get("max_providers", 2))),
            provider_retry_backoff_seconds=float(data.get("provider_retry_backoff_seconds", 2.0)),
            batch_size=max(1, int(data.get("batch_size", 4))),
            analysis_batch_limit=max(1, int(data.get("analysis_batch_limit", 10))),
            analysis_enabled=bool(data.get("analysis_enabled", True)),
            max_queries=max(0, int(data.get("max_queries", 3))),
            search_top_k=max(1, int(data.get("search_top_k", 10))),
            search_pool_size=max(1, int(data.get("search_pool_size", 500))),
            search_timeout_seconds=float(data.get("search_timeout_seconds", 10.0)),
            min_relevance=min_relevance,
            max_links_per_article=max(0, int(data.get("max_links_per_article", 5))),
            bias_weight=bias_weight,
        )


def parse_cli_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Analyze articles and link opposing coverage")
    parser.add_argument("--config", required=True, type=Path)
    parser.add_argument("--db", type=Path, help="Override the database path from the config file")
    parser.add_argument("--limit", type=int, help="Maximum number of unanalyzed articles to process")
    parser.add_argument(
        "--article",
        action="append",
        dest="article_ids",
        default=[],
        help="Analyze a specific article id (repeatable); skips the unanalyzed sweep",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    return parser.parse_args(argv)
