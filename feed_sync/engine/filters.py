"""Keyword/regex include-exclude rules applied to freshly parsed articles."""

from __future__ import annotations

import re
from threading import Lock
from typing import Iterable, Sequence

import structlog

from ..domain import Article, FilterMode, FilterRule
from ..errors import FilterRuleError
from ..infra.store import RuleProvider


def compile_rule_pattern(keyword: str) -> re.Pattern[str]:
    """Compile a regex rule case-insensitively; an invalid pattern raises :class:`FilterRuleError`."""

    try:
        return re.compile(keyword, re.IGNORECASE)
    except re.error as exc:
        raise FilterRuleError(f"无效的正则表达式 {keyword!r}: {exc}") from exc


class FilterEngine:
    """Whitelist first, blacklist second.

    When include rules exist an article must match at least one of them; the
    survivors are then dropped if any exclude rule matches.
    """

    def __init__(
        self,
        rule_provider: RuleProvider | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.rule_provider = rule_provider
        self.logger = logger or structlog.get_logger("feed_sync.filters")
        self._patterns: dict[str, re.Pattern[str] | None] = {}
        self._lock = Lock()

    def _compile(self, keyword: str) -> re.Pattern[str] | None:
        with self._lock:
            if keyword in self._patterns:
                return self._patterns[keyword]
        try:
            pattern: re.Pattern[str] | None = compile_rule_pattern(keyword)
        except FilterRuleError as exc:
            self.logger.warning("invalid_filter_regex", keyword=keyword, error=str(exc))
            pattern = None
        with self._lock:
            self._patterns[keyword] = pattern
        return pattern

    def matches(self, text: str, rule: FilterRule) -> bool:
        """``text`` must already be lowercased."""

        if rule.is_regex:
            pattern = self._compile(rule.keyword)
            return bool(pattern and pattern.search(text))
        return rule.keyword.lower() in text

    @staticmethod
    def haystack(article: Article) -> str:
        return f"{article.title} {article.summary} {article.content}".lower()

    def should_keep(self, article: Article, rules: Sequence[FilterRule]) -> bool:
        if not rules:
            return True
        text = self.haystack(article)
        include = [rule for rule in rules if rule.mode is FilterMode.INCLUDE]
        exclude = [rule for rule in rules if rule.mode is FilterMode.EXCLUDE]
        if include and not any(self.matches(text, rule) for rule in include):
            return False
        return not any(self.matches(text, rule) for rule in exclude)

    def filter(self, articles: Iterable[Article], rules: Sequence[FilterRule]) -> list[Article]:
        return [article for article in articles if self.should_keep(article, rules)]

    def apply(self, articles: list[Article], source_id: int) -> list[Article]:
        if self.rule_provider is None or not articles:
            return articles
        try:
            rules = self.rule_provider.get_effective_rules(source_id)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("filter_rules_unavailable", source_id=source_id, error=str(exc))
            return articles
        if not rules:
            return articles
        kept = self.filter(articles, rules)
        self.logger.info(
            "articles_filtered",
            source_id=source_id,
            rules=len(rules),
            kept=len(kept),
            dropped=len(articles) - len(kept),
        )
        return kept


__all__ = ["FilterEngine", "compile_rule_pattern"]
