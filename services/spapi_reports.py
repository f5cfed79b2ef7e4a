import logging
from typing import Any, Dict, List, Optional

import requests

from auth.spapi_auth import SpApiAuth
from config import REPORTS_API_HOST, SPAPI_HTTP_TIMEOUT
from services.report_parser import decode_document, parse_report_text

logger = logging.getLogger("spapi_reports")

REPORTS_PATH = "/reports/2021-06-30"

SUPPORTED_REPORT_TYPES = {
    "GET_FBA_MYI_UNSUPPRESSED_INVENTORY_DATA",
    "GET_FBA_MYI_ALL_INVENTORY_DATA",
    "GET_AFN_INVENTORY_DATA",
}

# SP-API processingStatus -> lifecycle status
PROCESSING_STATUSES = {"IN_QUEUE", "IN_PROGRESS"}
FAILED_STATUSES = {"CANCELLED", "FATAL", "DONE_NO_DATA"}


class ReportApiError(RuntimeError):
    """Transport-level failure talking to the Reports API (retryable by the caller)."""

    def __init__(self, message: str, *, collaborator: str = "spapi_reports", raw: Any = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.collaborator = collaborator
        self.raw = raw
        self.status_code = status_code


class SpApiQuotaError(ReportApiError):
    """Raised when SP-API returns a QuotaExceeded / 429."""


def assert_supported_report_type(report_type: str) -> None:
    if report_type not in SUPPORTED_REPORT_TYPES:
        raise ValueError(f"Unsupported report type: {report_type}")


def _response_payload(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


def extract_report_error_message(external_status: str, payload: Any) -> str:
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if isinstance(errors, list) and errors:
        first = errors[0] if isinstance(errors[0], dict) else {}
        details = " - ".join(
            str(part) for part in (first.get("code"), first.get("message"), first.get("details")) if part
        )
        if details:
            return f"Report status: {external_status}. {details}"
    return f"Report status: {external_status}"


class _ReportsApiClient:
    """Thin requests-based client for the Reports API (createReport / getReport / getReportDocument)."""

    def __init__(self, auth: Optional[SpApiAuth] = None, host: str = REPORTS_API_HOST, timeout: int = SPAPI_HTTP_TIMEOUT):
        self.auth = auth or SpApiAuth()
        self.host = host.rstrip("/")
        self.timeout = timeout

    def _headers(self, json_body: bool = False) -> Dict[str, str]:
        headers = {
            "x-amz-access-token": self.auth.get_lwa_access_token(),
            "accept": "application/json",
        }
        if json_body:
            headers["content-type"] = "application/json"
        return headers

    def _signed_headers(self, operation: str, json_body: bool = False) -> Dict[str, str]:
        try:
            return self._headers(json_body=json_body)
        except (requests.RequestException, RuntimeError) as exc:
            logger.error("[spapi_reports] %s LWA token error: %s", operation, exc)
            raise ReportApiError(f"{operation} LWA token error: {exc}", collaborator="lwa", raw=str(exc)) from exc

    def _call(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        signed: bool = True,
        json_body: bool = False,
        **kwargs: Any,
    ) -> requests.Response:
        if signed:
            kwargs["headers"] = self._signed_headers(operation, json_body=json_body)
        try:
            resp = requests.request(method, url, timeout=kwargs.pop("timeout", self.timeout), **kwargs)
        except requests.RequestException as exc:
            logger.error("[spapi_reports] %s transport error: %s", operation, exc)
            raise ReportApiError(f"{operation} transport error: {exc}", raw=str(exc)) from exc
        if resp.status_code == 429:
            payload = _response_payload(resp)
            logger.error("[spapi_reports] %s failed 429 QuotaExceeded: %s", operation, payload)
            raise SpApiQuotaError(f"QuotaExceeded on {operation}: {payload}", raw=payload, status_code=429)
        if resp.status_code >= 300:
            payload = _response_payload(resp)
            logger.error("[spapi_reports] %s failed %s: %s", operation, resp.status_code, payload)
            raise ReportApiError(
                f"{operation} failed {resp.status_code}: {payload}",
                raw=payload,
                status_code=resp.status_code,
            )
        return resp

    def request_report(self, params: Dict[str, Any]) -> Dict[str, Any]:
        report_type = params["reportType"]
        assert_supported_report_type(report_type)
        body: Dict[str, Any] = {
            "reportType": report_type,
            "marketplaceIds": list(params.get("marketplaceIds") or []),
        }
        if params.get("reportOptions"):
            body["reportOptions"] = params["reportOptions"]

        logger.info("[spapi_reports] createReport payload: %s", body)
        resp = self._call(
            "POST",
            f"{self.host}{REPORTS_PATH}/reports",
            "createReport",
            json=body,
            json_body=True,
        )
        payload = _response_payload(resp)
        report_id = payload.get("reportId") if isinstance(payload, dict) else None
        if not report_id:
            raise ReportApiError("Missing reportId in SP-API response", raw=payload)
        logger.info("[spapi_reports] Created report %s reportId=%s", report_type, report_id)
        return {"report_id": report_id, "request": body, "response": payload}

    def _download_rows(self, document_id: str) -> Dict[str, Any]:
        meta_resp = self._call(
            "GET",
            f"{self.host}{REPORTS_PATH}/documents/{document_id}",
            "getReportDocument",
        )
        meta = _response_payload(meta_resp)
        download_url = meta.get("url") if isinstance(meta, dict) else None
        if not download_url:
            raise ReportApiError(f"Missing download URL for document {document_id}", raw=meta)

        # Document URLs are pre-signed and expire; never cache them past this call.
        doc_resp = self._call("GET", download_url, "downloadReportDocument", signed=False, timeout=60)
        text = decode_document(doc_resp.content, meta.get("compressionAlgorithm"))
        preview = text.splitlines()[:10]
        logger.info("[spapi_reports] document %s first lines: %s", document_id, preview)
        return {"document": meta, "rows": parse_report_text(text)}

    def fetch_report_status(self, report_id: str) -> Dict[str, Any]:
        """
        Poll a report once and, when it is DONE, download and parse its document.

        Returns {"status", "external_status", "message", "payload", "rows"?} where
        status is one of requested | processing | completed | failed.
        Transport problems raise ReportApiError instead of returning "failed".
        """
        resp = self._call(
            "GET",
            f"{self.host}{REPORTS_PATH}/reports/{report_id}",
            "getReport",
        )
        payload = _response_payload(resp)
        if not isinstance(payload, dict):
            payload = {"raw": payload}
        external_status = str(payload.get("processingStatus") or "UNKNOWN").upper()
        logger.info("[spapi_reports] report %s status=%s", report_id, external_status)

        if external_status in FAILED_STATUSES:
            return {
                "status": "failed",
                "external_status": external_status,
                "message": extract_report_error_message(external_status, payload),
                "payload": payload,
            }
        if external_status != "DONE":
            message = "Report still processing." if external_status in PROCESSING_STATUSES else f"Report status: {external_status}"
            return {
                "status": "processing",
                "external_status": external_status,
                "message": message,
                "payload": payload,
            }

        document_id = payload.get("reportDocumentId")
        if not document_id:
            return {
                "status": "failed",
                "external_status": external_status,
                "message": "Missing reportDocumentId.",
                "payload": payload,
            }

        downloaded = self._download_rows(document_id)
        rows: List[Dict[str, str]] = downloaded["rows"]
        return {
            "status": "completed",
            "external_status": external_status,
            "message": "Report completed.",
            "payload": {"reportStatus": payload, "reportDocument": downloaded["document"]},
            "rows": rows,
        }


_client: Optional[_ReportsApiClient] = None


def get_spapi_client() -> _ReportsApiClient:
    global _client
    if _client is None:
        _client = _ReportsApiClient()
    return _client
