"""
Result normalization.

Completed-task payloads drift between releases of the job service: collections
arrive as lists or as keyed mappings, citation references as bare URLs or as
{url, relevance} objects, and scores may be missing. Each normalizer reduces its
feature's payload to one stable shape, and raises MalformedResponseError when the
payload matches none of the known shapes instead of returning an empty result.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

from aeo_client.services.errors import MalformedResponseError

logger = logging.getLogger(__name__)


def as_ordered_list(collection: Any, key_field: Optional[str] = None) -> Optional[List[Any]]:
    """
    Return `collection` as a list, or None when it is neither a list nor a mapping.

    Mappings keep their iteration order. When `key_field` is given and a value is
    a mapping without that field, the mapping key is filled in under it.
    """
    if isinstance(collection, (list, tuple)):
        return list(collection)
    if isinstance(collection, Mapping):
        items = []
        for key, value in collection.items():
            if key_field and isinstance(value, Mapping) and key_field not in value:
                value = {**value, key_field: key}
            items.append(value)
        return items
    return None


def optional_number(value: Any) -> Optional[float]:
    """A float, or None when absent or not numeric. Absent is never zero."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            return None
    return None


def optional_int(value: Any) -> Optional[int]:
    number = optional_number(value)
    return int(number) if number is not None else None


def _first(mapping: Mapping, *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _hostname(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parsed = urlparse(url if "://" in url else f"https://{url}")
    host = parsed.hostname or url
    return host[4:] if host.startswith("www.") else host


def _require_mapping(payload: Any, feature: str) -> Mapping:
    if not isinstance(payload, Mapping):
        raise MalformedResponseError(f"Unrecognized {feature} response", payload)
    return payload


class _Serializable:
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Keyword research

@dataclass
class KeywordRow(_Serializable):
    keyword: str
    search_volume: Optional[int] = None
    competition: Any = None
    cpc: Optional[float] = None
    intent: Optional[str] = None
    cluster_id: Optional[int] = None
    source: Optional[str] = None


@dataclass
class KeywordCluster(_Serializable):
    id: Any
    topic_name: Optional[str] = None
    keyword_count: Optional[int] = None
    suggested_article_titles: List[str] = field(default_factory=list)
    recommended_faq_questions: List[str] = field(default_factory=list)


@dataclass
class KeywordResearchResult(_Serializable):
    task_id: Any
    query: Optional[str]
    keywords: List[KeywordRow]
    clusters: List[KeywordCluster] = field(default_factory=list)


def _keyword_row(entry: Any) -> KeywordRow:
    if isinstance(entry, str):
        return KeywordRow(keyword=entry)
    if not isinstance(entry, Mapping) or not _first(entry, "keyword", "text"):
        raise MalformedResponseError("Keyword entry has no keyword text", entry)
    competition = entry.get("competition")
    if not isinstance(competition, str):
        competition = optional_number(competition)
    return KeywordRow(
        keyword=_first(entry, "keyword", "text"),
        search_volume=optional_int(_first(entry, "search_volume", "volume")),
        competition=competition,
        cpc=optional_number(entry.get("cpc")),
        intent=entry.get("intent"),
        cluster_id=optional_int(entry.get("cluster_id")),
        source=entry.get("source"),
    )


def normalize_keyword_research(payload: Any, params: Optional[Mapping] = None) -> KeywordResearchResult:
    params = params or {}
    payload = _require_mapping(payload, "keyword research")
    keywords = as_ordered_list(payload.get("keywords"), "keyword")
    if keywords is None and isinstance(payload.get("results"), Mapping):
        keywords = as_ordered_list(payload["results"].get("keywords"), "keyword")
    if keywords is None:
        raise MalformedResponseError("Keyword research results contain no keyword collection", payload)

    clusters = []
    for entry in as_ordered_list(payload.get("clusters"), "id") or []:
        if not isinstance(entry, Mapping):
            continue
        clusters.append(KeywordCluster(
            id=entry.get("id"),
            topic_name=entry.get("topic_name"),
            keyword_count=optional_int(entry.get("keyword_count")),
            suggested_article_titles=list(entry.get("suggested_article_titles") or []),
            recommended_faq_questions=list(entry.get("recommended_faq_questions") or []),
        ))

    return KeywordResearchResult(
        task_id=_first(payload, "id", "task_id"),
        query=payload.get("query") or params.get("query"),
        keywords=[_keyword_row(entry) for entry in keywords],
        clusters=clusters,
    )


# Citation analysis

@dataclass
class CitationReference(_Serializable):
    url: str
    relevance: Optional[float] = None


@dataclass
class ProviderCitation(_Serializable):
    provider: str
    citation_found: Optional[bool] = None
    confidence: Optional[float] = None
    references: List[CitationReference] = field(default_factory=list)
    explanation: Optional[str] = None


@dataclass
class QueryCitation(_Serializable):
    query: str
    providers: Dict[str, ProviderCitation] = field(default_factory=dict)
    top_competitors: List[Any] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class CitationScores(_Serializable):
    gpt: Optional[float] = None
    gemini: Optional[float] = None
    dataforseo: Optional[float] = None

    def is_empty(self) -> bool:
        return self.gpt is None and self.gemini is None and self.dataforseo is None


@dataclass
class CitationResult(_Serializable):
    task_id: Any
    url: Optional[str]
    queries: List[str]
    by_query: List[QueryCitation]
    scores: CitationScores = field(default_factory=CitationScores)

    @property
    def failed_queries(self) -> List[QueryCitation]:
        return [entry for entry in self.by_query if entry.failed]


MISSING_QUERY = "No result returned for this query"

_PROVIDER_FIELDS = ("citation_found", "citation_references", "confidence")


def citation_reference(entry: Any) -> Optional[CitationReference]:
    """Bare URL strings and {url, relevance} objects become one descriptor."""
    if isinstance(entry, str):
        return CitationReference(url=entry) if entry.strip() else None
    if isinstance(entry, Mapping):
        url = _first(entry, "url", "link", "href")
        if url:
            return CitationReference(url=url, relevance=optional_number(entry.get("relevance")))
    return None


def _provider_citation(name: str, block: Mapping) -> ProviderCitation:
    found = block.get("citation_found")
    references = [
        reference
        for reference in (citation_reference(r) for r in as_ordered_list(block.get("citation_references")) or [])
        if reference is not None
    ]
    return ProviderCitation(
        provider=block.get("provider") or name,
        citation_found=found if isinstance(found, bool) else None,
        confidence=optional_number(block.get("confidence")),
        references=references,
        explanation=block.get("explanation"),
    )


def _query_citation(entry: Any) -> QueryCitation:
    if not isinstance(entry, Mapping) or not entry.get("query"):
        raise MalformedResponseError("Citation entry has no query", entry)
    providers = {
        name: _provider_citation(name, block)
        for name, block in entry.items()
        if isinstance(block, Mapping) and any(f in block for f in _PROVIDER_FIELDS)
    }
    error = entry.get("error")
    if error is None and entry.get("status") == "failed":
        error = "Query analysis failed"
    return QueryCitation(
        query=entry["query"],
        providers=providers,
        top_competitors=list(entry.get("top_competitors") or []),
        error=str(error) if error is not None else None,
    )


def _citation_scores(*sources: Any) -> CitationScores:
    scores = CitationScores()
    for source in sources:
        if not isinstance(source, Mapping):
            continue
        scores.gpt = scores.gpt if scores.gpt is not None else optional_number(source.get("gpt_score"))
        scores.gemini = scores.gemini if scores.gemini is not None else optional_number(source.get("gemini_score"))
        if scores.dataforseo is None:
            scores.dataforseo = optional_number(source.get("dataforseo_score"))
    return scores


def normalize_citation_analysis(payload: Any, params: Optional[Mapping] = None) -> CitationResult:
    params = params or {}
    payload = _require_mapping(payload, "citation analysis")
    results = payload.get("results") if isinstance(payload.get("results"), Mapping) else {}
    raw = results.get("by_query", payload.get("by_query"))
    entries = as_ordered_list(raw, "query")
    if entries is None:
        raise MalformedResponseError("Citation results contain no per-query collection", payload)

    by_query = [_query_citation(entry) for entry in entries]
    queries = payload.get("queries")
    if isinstance(queries, list):
        by_query = _in_query_order(queries, by_query)
    else:
        queries = [entry.query for entry in by_query]

    return CitationResult(
        task_id=_first(payload, "task_id", "id"),
        url=payload.get("url") or params.get("url"),
        queries=list(queries),
        by_query=by_query,
        scores=_citation_scores(results.get("scores"), payload.get("meta")),
    )


def _in_query_order(queries: Sequence[str], entries: Iterable[QueryCitation]) -> List[QueryCitation]:
    """
    Order `entries` by `queries`. A listed query with no entry becomes a failed
    entry, so the job's missing work is retried rather than silently dropped.
    Entries for unlisted queries follow in their original order.
    """
    by_text: Dict[str, QueryCitation] = {}
    for entry in entries:
        by_text.setdefault(entry.query, entry)
    ordered = [by_text.pop(query, None) or QueryCitation(query=query, error=MISSING_QUERY) for query in queries]
    return ordered + list(by_text.values())


def merge_citation_results(base: CitationResult, update: CitationResult) -> CitationResult:
    """
    Fold a retried run into the earlier result.

    Failed entries in `base` are replaced by the entry for the same query in
    `update`; succeeded entries are kept. The merged entries follow the merged
    `queries` list, with queries new in `update` at its end.
    """
    replacements = {entry.query: entry for entry in update.by_query}
    base_queries = {entry.query for entry in base.by_query}
    merged: List[QueryCitation] = []
    for entry in base.by_query:
        replacement = replacements.get(entry.query)
        merged.append(replacement if entry.failed and replacement is not None else entry)
    merged.extend(entry for entry in update.by_query if entry.query not in base_queries)

    queries = list(base.queries) + [q for q in update.queries if q not in base.queries]
    merged = _in_query_order(queries, merged)
    return CitationResult(
        task_id=base.task_id,
        url=base.url or update.url,
        queries=queries,
        by_query=merged,
        scores=base.scores if update.scores.is_empty() else update.scores,
    )


# Backlink / PBN analysis

RISK_PRIORITY = {"critical": 4, "high": 3, "medium": 2, "low": 1}


@dataclass
class Backlink(_Serializable):
    source_url: str
    domain_from: Optional[str] = None
    anchor: Optional[str] = None
    link_type: Optional[str] = None
    domain_rank: Optional[float] = None
    ip: Optional[str] = None
    spam_score: Optional[float] = None
    pbn_probability: Optional[float] = None
    risk_level: Optional[str] = None
    reasons: List[str] = field(default_factory=list)


@dataclass
class BacklinkSummary(_Serializable):
    total_backlinks: Optional[int] = None
    dofollow_count: Optional[int] = None
    nofollow_count: Optional[int] = None


@dataclass
class PbnSummary(_Serializable):
    high_risk_count: Optional[int] = None
    medium_risk_count: Optional[int] = None
    low_risk_count: Optional[int] = None


@dataclass
class BacklinkResult(_Serializable):
    task_id: Any
    domain: Optional[str]
    backlinks: List[Backlink]
    summary: Optional[BacklinkSummary] = None
    pbn: Optional[PbnSummary] = None


def _backlink(entry: Any) -> Backlink:
    if not isinstance(entry, Mapping) or not _first(entry, "source_url", "url"):
        raise MalformedResponseError("Backlink entry has no source URL", entry)
    signals = entry.get("signals") if isinstance(entry.get("signals"), Mapping) else {}
    source_url = _first(entry, "source_url", "url")
    risk = entry.get("risk_level")
    return Backlink(
        source_url=source_url,
        domain_from=_first(entry, "domain_from", "source_domain") or _hostname(source_url),
        anchor=entry.get("anchor"),
        link_type=entry.get("link_type"),
        domain_rank=optional_number(entry.get("domain_rank", signals.get("domain_rank"))),
        ip=entry.get("ip") or signals.get("ip"),
        spam_score=optional_number(entry.get("backlink_spam_score", signals.get("backlink_spam_score"))),
        pbn_probability=optional_number(entry.get("pbn_probability")),
        risk_level=risk.lower() if isinstance(risk, str) else None,
        reasons=list(entry.get("reasons") or []),
    )


def _risk_sort_key(backlink: Backlink):
    probability = backlink.pbn_probability if backlink.pbn_probability is not None else -1.0
    return (-RISK_PRIORITY.get(backlink.risk_level or "", 0), -probability)


def normalize_backlink_analysis(payload: Any, params: Optional[Mapping] = None) -> BacklinkResult:
    params = params or {}
    payload = _require_mapping(payload, "backlink analysis")
    results = payload.get("results") if isinstance(payload.get("results"), Mapping) else payload
    pbn_detection = results.get("pbn_detection") if isinstance(results.get("pbn_detection"), Mapping) else {}

    entries = as_ordered_list(results.get("backlinks"), "source_url")
    pbn_items = as_ordered_list(pbn_detection.get("items"), "source_url") or []
    if entries is None:
        if "items" not in pbn_detection:
            raise MalformedResponseError("Backlink results contain no backlink collection", payload)
        entries = pbn_items
        pbn_items = []

    backlinks = [_backlink(entry) for entry in entries]

    # PBN detection items carry the risk classification for the same URLs
    by_url = {b.source_url: b for b in backlinks}
    for item in pbn_items:
        scored = _backlink(item)
        target = by_url.get(scored.source_url)
        if target is None:
            backlinks.append(scored)
            by_url[scored.source_url] = scored
            continue
        if target.pbn_probability is None:
            target.pbn_probability = scored.pbn_probability
        if target.risk_level is None:
            target.risk_level = scored.risk_level
        if target.spam_score is None:
            target.spam_score = scored.spam_score
        target.reasons = target.reasons or scored.reasons

    backlinks.sort(key=_risk_sort_key)

    summary = None
    raw_summary = results.get("summary")
    if isinstance(raw_summary, Mapping):
        summary = BacklinkSummary(
            total_backlinks=optional_int(_first(raw_summary, "total_backlinks", "backlinks")),
            dofollow_count=optional_int(raw_summary.get("dofollow_count")),
            nofollow_count=optional_int(raw_summary.get("nofollow_count")),
        )

    raw_pbn = pbn_detection.get("summary") if isinstance(pbn_detection.get("summary"), Mapping) else pbn_detection
    if any(f"{level}_risk_count" in raw_pbn for level in ("high", "medium", "low")):
        pbn = PbnSummary(
            high_risk_count=optional_int(raw_pbn.get("high_risk_count")),
            medium_risk_count=optional_int(raw_pbn.get("medium_risk_count")),
            low_risk_count=optional_int(raw_pbn.get("low_risk_count")),
        )
    else:
        pbn = PbnSummary(
            high_risk_count=sum(1 for b in backlinks if b.risk_level in ("high", "critical")),
            medium_risk_count=sum(1 for b in backlinks if b.risk_level == "medium"),
            low_risk_count=sum(1 for b in backlinks if b.risk_level == "low"),
        )

    return BacklinkResult(
        task_id=_first(payload, "task_id", "id"),
        domain=payload.get("domain") or params.get("domain"),
        backlinks=backlinks,
        summary=summary,
        pbn=pbn,
    )


def disavow_domains(result: BacklinkResult, levels: Iterable[str] = ("high", "critical")) -> List[str]:
    """Sorted, de-duplicated referring hosts whose risk is in `levels`."""
    wanted = {level.lower() for level in levels}
    domains = set()
    for backlink in result.backlinks:
        if backlink.risk_level in wanted:
            host = _hostname(backlink.domain_from) or _hostname(backlink.source_url)
            if host:
                domains.add(host)
    return sorted(domains)


def render_disavow(domains: Sequence[str]) -> str:
    return "\n".join(f"Domain: {domain}" for domain in domains)


# FAQ generation

@dataclass
class Faq(_Serializable):
    question: str
    answer: str
    source: Optional[str] = None


@dataclass
class FaqResult(_Serializable):
    task_id: Any
    input: Optional[str]
    faqs: List[Faq]


def _faq(entry: Any) -> Faq:
    if not isinstance(entry, Mapping) or not entry.get("question"):
        raise MalformedResponseError("FAQ entry has no question", entry)
    return Faq(question=entry["question"], answer=entry.get("answer") or "", source=entry.get("source"))


def normalize_faq_generation(payload: Any, params: Optional[Mapping] = None) -> FaqResult:
    params = params or {}
    payload = _require_mapping(payload, "FAQ generation")
    raw = payload.get("faqs")
    if isinstance(raw, Mapping) and raw and all(isinstance(v, str) for v in raw.values()):
        faqs = [Faq(question=q, answer=a) for q, a in raw.items()]
    else:
        entries = as_ordered_list(raw, "question")
        if entries is None:
            raise MalformedResponseError("FAQ results contain no FAQ collection", payload)
        faqs = [_faq(entry) for entry in entries]

    return FaqResult(
        task_id=_first(payload, "task_id", "id"),
        input=payload.get("input") or params.get("input"),
        faqs=faqs,
    )
