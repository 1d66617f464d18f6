"""
fiscal_services.authority_client -- HTTP client for the Authority's device API.

Responsibility:
    Sends JSON requests to the Authority endpoints and turns the replies
    into AuthorityResponse values.  Knows the wire envelope (resultCd,
    resultMsg, resultDt, data) and nothing about sales or catalog rules.

Architecture position:
    Services -- the only module that performs network I/O.

Invariants enforced:
    - At most one HTTP request per call; there are no automatic retries.
      Retrying is a caller decision made through the submission state
      machine.
    - "000" is the only accepted result code.  Any other code is returned,
      not raised: a business rejection is an outcome.

Failure modes:
    - AuthorityTransportError: timeout, connection failure, non-2xx status,
      or a body that is not a JSON object with a result code.
    - AuthorityProtocolError: an accepted sale reply missing any
      acknowledgement field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from fiscal_kernel.domain.dtos import AuthorityAcknowledgement
from fiscal_kernel.exceptions import AuthorityProtocolError, AuthorityTransportError
from fiscal_kernel.logging_config import get_logger

if TYPE_CHECKING:
    from fiscal_config.schema import AuthorityEndpoint

logger = get_logger("services.authority_client")

SAVE_SALE_PATH = "/saveTrnsSalesOsdc"
SAVE_ITEM_PATH = "/saveItem"
INSERT_STOCK_IO_PATH = "/insertStockIO"
INSERT_PURCHASE_PATH = "/insertTrnsPurchase"

ACCEPTED_RESULT_CODE = "000"

_ACK_FIELDS = ("curRcptNo", "totRcptNo", "intrlData", "rcptSign", "sdcDateTime")


@dataclass(frozen=True)
class AuthorityResponse:
    """One decoded Authority reply."""

    endpoint: str
    result_code: str
    result_message: str | None = None
    result_date: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.result_code == ACCEPTED_RESULT_CODE

    def acknowledgement(self) -> AuthorityAcknowledgement:
        """
        The signed acknowledgement carried by an accepted sale reply.

        Raises:
            AuthorityProtocolError: if any acknowledgement field is absent.
        """
        missing = [name for name in _ACK_FIELDS if self.data.get(name) in (None, "")]
        if missing:
            raise AuthorityProtocolError(self.endpoint, missing)
        try:
            receipt_counter = int(self.data["curRcptNo"])
            total_receipt_counter = int(self.data["totRcptNo"])
        except (TypeError, ValueError) as exc:
            raise AuthorityProtocolError(self.endpoint, ["curRcptNo", "totRcptNo"]) from exc
        device_id = self.data.get("sdcId")
        return AuthorityAcknowledgement(
            receipt_counter=receipt_counter,
            total_receipt_counter=total_receipt_counter,
            internal_data=str(self.data["intrlData"]),
            signature=str(self.data["rcptSign"]),
            confirmed_at=str(self.data["sdcDateTime"]),
            device_id=str(device_id) if device_id is not None else None,
        )


class AuthorityClient:
    """
    Synchronous Authority client over ``httpx.Client``.

    Usage:
        with AuthorityClient.from_endpoint(config.authority) as client:
            response = client.save_sale(payload)

    Tests pass ``transport=httpx.MockTransport(handler)``.
    """

    def __init__(
        self,
        base_url: str,
        tin: str,
        branch_id: str = "00",
        cmc_key: str = "",
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._http = httpx.Client(
            base_url=base_url,
            headers={
                "Content-Type": "application/json",
                "tin": tin,
                "bhfId": branch_id,
                "cmcKey": cmc_key,
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_endpoint(
        cls,
        endpoint: AuthorityEndpoint,
        transport: httpx.BaseTransport | None = None,
    ) -> AuthorityClient:
        return cls(
            base_url=endpoint.base_url,
            tin=endpoint.tin,
            branch_id=endpoint.branch_id,
            cmc_key=endpoint.cmc_key,
            timeout_seconds=endpoint.timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> AuthorityClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def save_sale(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self.post(SAVE_SALE_PATH, payload)

    def save_item(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self.post(SAVE_ITEM_PATH, payload)

    def insert_stock_io(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self.post(INSERT_STOCK_IO_PATH, payload)

    def save_purchase(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self.post(INSERT_PURCHASE_PATH, payload)

    def post(self, path: str, payload: dict[str, Any]) -> AuthorityResponse:
        logger.info("authority_request_sent", extra={"endpoint": path})
        try:
            response = self._http.post(path, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("authority_timeout", extra={"endpoint": path})
            raise AuthorityTransportError(path, f"timeout: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("authority_http_error", extra={"endpoint": path, "status_code": status})
            raise AuthorityTransportError(path, f"HTTP {status}", status_code=status) from exc
        except httpx.HTTPError as exc:
            logger.warning("authority_unreachable", extra={"endpoint": path, "error": str(exc)})
            raise AuthorityTransportError(path, str(exc)) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise AuthorityTransportError(
                path, "response body is not JSON", status_code=response.status_code
            ) from exc
        if not isinstance(body, dict) or body.get("resultCd") in (None, ""):
            raise AuthorityTransportError(
                path, "response has no result code", status_code=response.status_code
            )

        data = body.get("data")
        result = AuthorityResponse(
            endpoint=path,
            result_code=str(body["resultCd"]),
            result_message=body.get("resultMsg"),
            result_date=body.get("resultDt"),
            data=data if isinstance(data, dict) else {},
        )
        logger.info(
            "authority_response_received",
            extra={
                "endpoint": path,
                "result_code": result.result_code,
                "accepted": result.accepted,
            },
        )
        return result
