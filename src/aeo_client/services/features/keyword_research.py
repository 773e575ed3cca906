from aeo_client.services.features.base import Endpoint, FeatureSpec
from aeo_client.services.normalize import normalize_keyword_research
from aeo_client.services.tasks import TaskKind

FEATURE = FeatureSpec(
    kind=TaskKind.KEYWORD_RESEARCH,
    description=(
        "Collect keyword ideas, search volumes and intent clusters for a seed query. "
        "Status reports a bare percentage; results are fetched from a separate endpoint."
    ),
    submit=Endpoint("POST", "/api/keyword-research"),
    status=Endpoint("GET", "/api/keyword-research/{task_id}/status"),
    results=Endpoint("GET", "/api/keyword-research/{task_id}/results"),
    normalize=normalize_keyword_research,
    poll_interval=2.0,
    max_attempts=60,
)
