from aeo_client.services.features.base import Endpoint, FeatureSpec
from aeo_client.services.normalize import normalize_faq_generation
from aeo_client.services.tasks import TaskKind, TaskStatus

FEATURE = FeatureSpec(
    kind=TaskKind.FAQ_GENERATION,
    description=(
        "Generate question/answer pairs for a topic or page. "
        "The finished FAQs are embedded in the terminal status response."
    ),
    submit=Endpoint("POST", "/api/faq/task"),
    status=Endpoint("GET", "/api/faq/task/{task_id}"),
    id_fields=("task_id", "id"),
    status_aliases={"generating": TaskStatus.PROCESSING},
    normalize=normalize_faq_generation,
    poll_interval=2.0,
    max_attempts=60,
)
