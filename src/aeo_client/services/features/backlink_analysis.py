from aeo_client.services.features.base import Endpoint, FeatureSpec
from aeo_client.services.normalize import normalize_backlink_analysis
from aeo_client.services.tasks import TaskKind

# Status and results are POST lookups keyed by task_id in the body
FEATURE = FeatureSpec(
    kind=TaskKind.BACKLINK_ANALYSIS,
    description=(
        "Fetch a domain's backlinks and classify each referring site's private "
        "blog network (PBN) risk."
    ),
    submit=Endpoint("POST", "/api/seo/backlinks/submit"),
    status=Endpoint("POST", "/api/seo/backlinks/status", id_in_body="task_id"),
    results=Endpoint("POST", "/api/seo/backlinks/results", id_in_body="task_id"),
    id_fields=("task_id", "id"),
    normalize=normalize_backlink_analysis,
    poll_interval=5.0,
    max_attempts=120,
)
