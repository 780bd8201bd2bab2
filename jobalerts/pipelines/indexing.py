"""Job indexing pipeline: keeps the search index in step with job postings.

Job names and payloads:

- ``indexJob``: a full job document (camelCase index fields)
- ``updateJobIndex``: ``id`` plus the fields to change
- ``deleteJobIndex``: ``id`` only
"""

from typing import Any, Dict

from pydantic import ValidationError

from jobalerts.config.models import AppConfig
from jobalerts.domain.models import JobDocument
from jobalerts.domain.queues import DELETE_JOB_INDEX, INDEX_JOB, JOB_INDEX_QUEUE, UPDATE_JOB_INDEX
from jobalerts.logging import get_logger
from jobalerts.queue import QueueJob, QueueRuntime, UnrecoverableJobError
from jobalerts.search import SearchIndexClient, SearchQueryError
from jobalerts.utils.timestamps import parse_iso_datetime, timestamp_to_unix, unix_to_timestamp

from .common import worker_options

logger = get_logger(__name__, component="indexer")


def normalise_created_at(value: Any) -> Any:
    """Coerce ``createdAt`` to epoch seconds (accepts ISO strings and milliseconds)."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float)):
        return timestamp_to_unix(unix_to_timestamp(value))
    if isinstance(value, str):
        parsed = parse_iso_datetime(value)
        if parsed is not None:
            return timestamp_to_unix(parsed)
    return value


def _document_id(payload: Dict[str, Any]) -> str:
    doc_id = payload.get("id")
    if doc_id is None or str(doc_id).strip() == "":
        raise UnrecoverableJobError("Index job payload is missing 'id'")
    return str(doc_id)


class IndexingHandler:
    def __init__(self, search_client: SearchIndexClient, collection: str):
        self.search_client = search_client
        self.collection = collection

    def __call__(self, job: QueueJob) -> Dict[str, Any]:
        payload = dict(job.payload)
        if "createdAt" in payload:
            payload["createdAt"] = normalise_created_at(payload["createdAt"])

        try:
            if job.name == INDEX_JOB:
                try:
                    document = JobDocument.model_validate(payload)
                except ValidationError as e:
                    raise UnrecoverableJobError(f"Invalid job document: {e}") from e
                self.search_client.upsert_document(self.collection, document.to_index())
                doc_id = document.id

            elif job.name == UPDATE_JOB_INDEX:
                doc_id = _document_id(payload)
                fields = {key: value for key, value in payload.items() if key != "id"}
                self.search_client.update_document(self.collection, doc_id, fields)

            elif job.name == DELETE_JOB_INDEX:
                doc_id = _document_id(payload)
                if self.search_client.delete_document(self.collection, doc_id) is None:
                    logger.info(
                        f"Job {doc_id} was not in the index",
                        extra={"event": "indexer.delete.missing", "doc_id": doc_id},
                    )
            else:
                raise UnrecoverableJobError(f"Unknown job '{job.name}' on {JOB_INDEX_QUEUE}")

        except SearchQueryError as e:
            # The index rejected the document itself; retrying cannot help
            raise UnrecoverableJobError(str(e)) from e

        logger.info(
            f"{job.name} applied to document {doc_id}",
            extra={"event": "indexer.applied", "doc_id": doc_id},
        )
        return {"id": doc_id, "action": job.name}


def register_indexing(
    runtime: QueueRuntime, search_client: SearchIndexClient, config: AppConfig
) -> None:
    runtime.register_worker(
        JOB_INDEX_QUEUE,
        IndexingHandler(search_client, config.search.collection),
        worker_options(config.queue.worker_settings(JOB_INDEX_QUEUE)),
    )
    logger.info(
        "Job indexing pipeline registered",
        extra={"event": "pipeline.registered", "queue": JOB_INDEX_QUEUE},
    )
