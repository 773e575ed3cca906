from typing import List

from aeo_client.services.features.base import Endpoint, FeatureSpec
from aeo_client.services.normalize import CitationResult, merge_citation_results, normalize_citation_analysis
from aeo_client.services.tasks import TaskKind


def failed_queries(result: CitationResult) -> List[str]:
    """Queries whose analysis failed; these are what a retry re-queues."""
    return [entry.query for entry in result.failed_queries]


FEATURE = FeatureSpec(
    kind=TaskKind.CITATION_ANALYSIS,
    description=(
        "Check whether AI answer engines cite a URL across a set of generated queries. "
        "Partial failures can be retried for just the failed queries."
    ),
    submit=Endpoint("POST", "/api/citations/analyze"),
    status=Endpoint("GET", "/api/citations/status/{task_id}"),
    results=Endpoint("GET", "/api/citations/results/{task_id}"),
    retry=Endpoint("POST", "/api/citations/retry/{task_id}"),
    id_fields=("task_id", "id"),
    normalize=normalize_citation_analysis,
    poll_interval=5.0,
    max_attempts=120,
    partial_failures=failed_queries,
    merge_results=merge_citation_results,
)
