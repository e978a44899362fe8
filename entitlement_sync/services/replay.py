"""
Operator replay of webhook log rows that never reached processed=true.

Replay is manual: the engine never schedules retries itself. An operator either re-runs
a stored payload in-process (WebhookIngestor.replay, which updates the same log row) or
re-POSTs it to a running endpoint, which records it as a new log row exactly like a
sender-side retry would; the source row is then closed so it is not re-sent again.
"""
import logging
from typing import Any, Dict, List, Optional
import requests

from entitlement_sync.services.event_log import EventLogStore
from entitlement_sync.services.ingestion import IngestOutcome, WebhookIngestor

logger = logging.getLogger(__name__)


def pending_log_ids(log_store: EventLogStore, limit: int = 100) -> List[str]:
    """Ids of unprocessed log rows, oldest first."""
    return [row.id for row in log_store.list_unprocessed(limit=limit)]


def replay_in_process(ingestor: WebhookIngestor, log_ids: List[str]) -> Dict[str, IngestOutcome]:
    """Replay each log row through the local ingestor. Missing rows are logged and skipped."""
    outcomes: Dict[str, IngestOutcome] = {}
    for log_id in log_ids:
        try:
            outcomes[log_id] = ingestor.replay(log_id)
        except LookupError as e:
            logger.warning(str(e))
            continue
        logger.info(f"Replayed {log_id}: success={outcomes[log_id].success} error={outcomes[log_id].error_code}")
    return outcomes


def repost_payload(url: str, payload: Dict[str, Any], timeout: float = 30.0,
                   headers: Optional[Dict[str, str]] = None) -> requests.Response:
    """
    POST a stored raw payload to a webhook endpoint.

    Raises:
        requests.RequestException: On connection errors or timeouts
    """
    request_headers = {"Content-Type": "application/json"}
    if headers:
        request_headers.update(headers)
    response = requests.post(url, json=payload, headers=request_headers, timeout=timeout)
    logger.info(f"Re-posted payload to {url}: HTTP {response.status_code}")
    return response


def repost_log_row(log_store: EventLogStore, log_id: str, url: str, timeout: float = 30.0,
                   headers: Optional[Dict[str, str]] = None) -> requests.Response:
    """
    Re-POST a stored log row's payload and retire the row once the endpoint accepts it.

    The endpoint records the delivery as a new log row carrying the real outcome, so on a
    2xx response the source row is closed with a ``replayed_via_repost`` note and no longer
    shows up as pending.

    Raises:
        LookupError: If no log row has this id
        requests.RequestException: On connection errors or timeouts
    """
    row = log_store.get(log_id)
    if row is None:
        raise LookupError(f"Webhook log {log_id} not found")

    response = repost_payload(url, row.payload, timeout=timeout, headers=headers)
    if response.ok:
        log_store.mark_outcome(log_id, True, f"replayed_via_repost: HTTP {response.status_code} to {url}")
    else:
        logger.warning(f"Re-POST of webhook log {log_id} got HTTP {response.status_code}; row left pending")
    return response
