import logging
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError
from requests.exceptions import HTTPError, RequestException

from .store import StoreBackend, StoreEntry, StoreError

logger = logging.getLogger(__name__)


def strip_none(value: Any) -> Any:
    """Remove None values recursively; the Realtime Database treats null as delete."""
    if isinstance(value, list):
        return [strip_none(v) for v in value]
    if isinstance(value, dict):
        return {k: strip_none(v) for k, v in value.items() if v is not None}
    return value


def normalize_arrays(data: Any) -> Any:
    """
    Convert objects keyed "0".."n-1" back into lists, at every nesting level.

    The Realtime Database may return a stored array as an object with numeric
    string keys. Objects whose keys are numeric but do not start at "0" or are
    not sequential are genuine maps and are left as dicts.
    """
    if isinstance(data, list):
        return [normalize_arrays(v) for v in data]
    if isinstance(data, dict):
        keys = list(data.keys())
        is_array = (
            len(keys) > 0
            and all(isinstance(k, str) and k.isdigit() for k in keys)
            and "0" in keys
            and max(int(k) for k in keys) == len(keys) - 1
        )
        if is_array:
            return [normalize_arrays(data[k]) for k in sorted(keys, key=int)]
        return {k: normalize_arrays(v) for k, v in data.items()}
    return data


class FirebaseBackend(StoreBackend):
    """
    Store adapter for the Firebase Realtime Database REST API.

    Each key lives at `<url>/<key>.json` as an envelope holding the version,
    writer id, update time and the collection itself.
    """

    def __init__(self, url: str, auth: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        """
        Args:
            url: Base URL of the database, e.g. https://my-fleet.firebaseio.com
            auth: Database secret or ID token, sent as the `auth` query parameter.
            timeout: Seconds to wait for each HTTP request.
            session: Optional requests session (injected in tests).
        """
        super().__init__()
        self.url = url.rstrip('/')
        self.auth = auth
        self.timeout = timeout
        self.session = session or requests.Session()

    def _key_url(self, key: str) -> str:
        return f"{self.url}/{key}.json"

    def _params(self) -> Dict[str, str]:
        return {"auth": self.auth} if self.auth else {}

    def get(self, key: str) -> Optional[StoreEntry]:
        try:
            response = self.session.get(self._key_url(key), params=self._params(), timeout=self.timeout)
            response.raise_for_status()
            raw = response.json()
        except HTTPError as e:
            status_code = e.response.status_code if e.response is not None else 'N/A'
            logger.error(f"HTTPError reading '{key}' from Firebase: Status {status_code}. Detail: {e}")
            raise StoreError(f"Could not read '{key}': HTTP {status_code}") from e
        except RequestException as e:
            logger.error(f"RequestException reading '{key}' from Firebase: {e}")
            raise StoreError(f"Could not read '{key}': {e}") from e
        except ValueError as e: # Body was not JSON
            logger.error(f"Firebase returned a non-JSON body for '{key}': {e}")
            raise StoreError(f"Could not read '{key}': invalid JSON") from e

        if raw is None:
            return None
        raw = normalize_arrays(raw)
        if isinstance(raw, list):
            # Plain collection written by another client without an envelope
            return StoreEntry(version=0, value=raw)
        try:
            if "value" not in raw:
                raw["value"] = []
            return StoreEntry(**raw)
        except (ValidationError, TypeError) as e:
            logger.error(f"Unexpected data stored under '{key}': {e}")
            raise StoreError(f"Unexpected data stored under '{key}'") from e

    def _write(self, key: str, entry: StoreEntry) -> None:
        payload = strip_none(entry.model_dump(mode="json"))
        try:
            response = self.session.put(self._key_url(key), params=self._params(), json=payload, timeout=self.timeout)
            response.raise_for_status()
        except HTTPError as e:
            status_code = e.response.status_code if e.response is not None else 'N/A'
            logger.error(f"HTTPError writing '{key}' to Firebase: Status {status_code}. Detail: {e}")
            raise StoreError(f"Could not write '{key}': HTTP {status_code}") from e
        except RequestException as e:
            logger.error(f"RequestException writing '{key}' to Firebase: {e}")
            raise StoreError(f"Could not write '{key}': {e}") from e
