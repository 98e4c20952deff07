"""Lightweight JSON-RPC client for Ethereum execution nodes."""
from __future__ import annotations

import itertools
import json
import logging
import time
from typing import Any, Mapping, Optional, Sequence

import requests

from mevsentry.errors import RpcClientError, RpcResponseError


logger = logging.getLogger(__name__)


class JsonRpcClient:
    """Thin wrapper around requests with retries and JSON-RPC error handling."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: float = 1.0,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        if not endpoint:
            raise ValueError("RPC endpoint is required")
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self._headers = dict(headers or {})
        self._session = requests.Session()
        self._ids = itertools.count(1)

    def call(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        """Send one JSON-RPC request and return its ``result``.

        Raises:
            RpcClientError: If the endpoint is unreachable or the response is
                not a JSON-RPC envelope.
            RpcResponseError: If the node keeps answering with an error.
        """
        if not method:
            raise ValueError("method must not be empty")

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params or []),
        }
        attempt = 0
        wait = self.backoff

        while True:
            try:
                request_headers = {"Content-Type": "application/json", **self._headers}
                response = self._session.post(
                    self.endpoint,
                    json=payload,
                    timeout=self.timeout,
                    headers=request_headers,
                )
                response.raise_for_status()
            except requests.RequestException as exc:  # pragma: no cover - network dependent
                logger.warning(
                    "RPC %s request failed (%s/%s): %s",
                    method,
                    attempt + 1,
                    self.max_retries + 1,
                    exc,
                )
                if attempt >= self.max_retries:
                    raise RpcClientError(f"Failed to reach RPC endpoint for {method}") from exc
                time.sleep(wait)
                wait *= 2
                attempt += 1
                continue

            try:
                payload_json = response.json()
            except json.JSONDecodeError as exc:
                raise RpcClientError(f"RPC response to {method} was not valid JSON") from exc

            if payload_json.get("error") is not None:
                message = payload_json.get("error")
                logger.warning("RPC %s responded with error: %s", method, message)
                if attempt >= self.max_retries:
                    raise RpcResponseError(f"{method}: {message}")
                time.sleep(wait)
                wait *= 2
                attempt += 1
                continue

            if "result" not in payload_json:
                raise RpcClientError(f"RPC response to {method} missing 'result' field")

            logger.debug("RPC %s succeeded in %s attempt(s)", method, attempt + 1)
            return payload_json["result"]
