"""Clients for the carrier directory, sample store and training services.

All three speak the same callable protocol: ``POST {base_url}/{function}``
with body ``{"data": {...}}``; the reply is ``{"result": {...}}`` (or the bare
object) carrying ``success`` and, on failure, ``error``.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from .config import FunctionNames, ServicesConfig, resolve_api_token
from .errors import ServiceError
from .schemas import Carrier, FetchedDocument, TrainingResult, UploadedDocument

logger = logging.getLogger("invoice_trainer.services")


class CarrierDirectory(Protocol):
    async def list_carriers(self, filter: Optional[str] = None) -> List[Carrier]: ...

    async def create_carrier(self, name: str, category: str) -> str: ...


class SampleStore(Protocol):
    async def upload_document(self, carrier_id: str, file_bytes: bytes, file_name: str) -> UploadedDocument: ...

    async def fetch_document(self, document_id: str, carrier_id: Optional[str] = None) -> FetchedDocument: ...

    async def download(self, url: str) -> bytes: ...


class TrainingInvocation(Protocol):
    async def submit_training(self, request: Dict[str, Any]) -> TrainingResult: ...


def _error_message(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        return str(message) if message else None
    if isinstance(error, str) and error.strip():
        return error.strip()
    message = payload.get("message")
    return str(message) if isinstance(message, str) and message.strip() else None


class CallableClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_token: Optional[str] = None,
        timeout_sec: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout_sec = timeout_sec
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def call(self, function: str, data: Dict[str, Any], *, timeout_sec: Optional[float] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{function}"
        timeout = float(timeout_sec or self.timeout_sec)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.post(url, json={"data": data}, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("Service call %s failed: %s", function, exc)
            raise ServiceError(f"{function} request failed: {exc}", function=function) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            message = _error_message(payload) or response.text[:500]
            raise ServiceError(
                f"{function} failed ({response.status_code}): {message}",
                function=function,
                status_code=response.status_code,
            )
        if not isinstance(payload, dict):
            raise ServiceError(f"{function} returned a non-JSON response.", function=function)

        result = payload.get("result", payload)
        if not isinstance(result, dict):
            raise ServiceError(f"{function} returned an unexpected result shape.", function=function)
        if result.get("success") is False:
            raise ServiceError(_error_message(result) or f"{function} failed.", function=function)
        return result

    async def get_bytes(self, url: str, *, timeout_sec: Optional[float] = None) -> bytes:
        timeout = float(timeout_sec or self.timeout_sec)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ServiceError(f"Download failed for {url}: {exc}") from exc
        return response.content


class HttpCarrierDirectory:
    def __init__(self, client: CallableClient, functions: Optional[FunctionNames] = None) -> None:
        self.client = client
        self.functions = functions or FunctionNames()

    async def list_carriers(self, filter: Optional[str] = None) -> List[Carrier]:
        data: Dict[str, Any] = {"filter": filter} if filter else {}
        result = await self.client.call(self.functions.list_carriers, data)
        raw_carriers = result.get("carriers", [])
        if not isinstance(raw_carriers, list):
            raise ServiceError("Carrier list is missing from the response.", function=self.functions.list_carriers)

        carriers: List[Carrier] = []
        for raw in raw_carriers:
            if not isinstance(raw, dict):
                continue
            try:
                carriers.append(Carrier.model_validate(raw))
            except ValidationError:
                logger.warning("Skipping malformed carrier record: %r", raw)
        if filter:
            needle = filter.strip().lower()
            carriers = [c for c in carriers if needle in c.name.lower()]
        return carriers

    async def create_carrier(self, name: str, category: str) -> str:
        result = await self.client.call(self.functions.create_carrier, {"name": name, "category": category})
        nested = result.get("carrier") if isinstance(result.get("carrier"), dict) else {}
        carrier_id = result.get("carrierId") or result.get("id") or nested.get("id")
        if not carrier_id:
            raise ServiceError("Carrier was created but no id was returned.", function=self.functions.create_carrier)
        return str(carrier_id)


class HttpSampleStore:
    def __init__(
        self,
        client: CallableClient,
        functions: Optional[FunctionNames] = None,
        *,
        upload_timeout_sec: Optional[float] = None,
    ) -> None:
        self.client = client
        self.functions = functions or FunctionNames()
        self.upload_timeout_sec = upload_timeout_sec

    async def upload_document(self, carrier_id: str, file_bytes: bytes, file_name: str) -> UploadedDocument:
        result = await self.client.call(
            self.functions.upload_document,
            {
                "carrierId": carrier_id,
                "fileName": file_name,
                "base64Data": base64.b64encode(file_bytes).decode("ascii"),
            },
            timeout_sec=self.upload_timeout_sec,
        )
        try:
            return UploadedDocument.model_validate(result)
        except ValidationError as exc:
            raise ServiceError(f"Upload response is missing the document id: {exc}", function=self.functions.upload_document) from exc

    async def fetch_document(self, document_id: str, carrier_id: Optional[str] = None) -> FetchedDocument:
        data: Dict[str, Any] = {"sampleId": document_id}
        if carrier_id:
            data["carrierId"] = carrier_id
        result = await self.client.call(self.functions.fetch_document, data)
        body = result.get("sample") if isinstance(result.get("sample"), dict) else result
        try:
            return FetchedDocument.model_validate(body)
        except ValidationError as exc:
            raise ServiceError(f"Document {document_id} has no download URL: {exc}", function=self.functions.fetch_document) from exc

    async def download(self, url: str) -> bytes:
        return await self.client.get_bytes(url, timeout_sec=self.upload_timeout_sec)


class HttpTrainingInvocation:
    def __init__(
        self,
        client: CallableClient,
        functions: Optional[FunctionNames] = None,
        *,
        timeout_sec: Optional[float] = None,
    ) -> None:
        self.client = client
        self.functions = functions or FunctionNames()
        self.timeout_sec = timeout_sec

    async def submit_training(self, request: Dict[str, Any]) -> TrainingResult:
        result = await self.client.call(self.functions.submit_training, request, timeout_sec=self.timeout_sec)
        body = result.get("results") if isinstance(result.get("results"), dict) else result
        try:
            return TrainingResult.model_validate({"success": True, **body})
        except ValidationError as exc:
            raise ServiceError(f"Unexpected training response: {exc}", function=self.functions.submit_training) from exc


@dataclass
class ServiceBundle:
    carriers: CarrierDirectory
    samples: SampleStore
    training: TrainingInvocation


def build_http_services(cfg: ServicesConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> ServiceBundle:
    client = CallableClient(
        cfg.base_url,
        api_token=resolve_api_token(cfg),
        timeout_sec=cfg.timeout_sec,
        transport=transport,
    )
    return ServiceBundle(
        carriers=HttpCarrierDirectory(client, cfg.functions),
        samples=HttpSampleStore(client, cfg.functions, upload_timeout_sec=cfg.upload_timeout_sec),
        training=HttpTrainingInvocation(client, cfg.functions, timeout_sec=cfg.upload_timeout_sec),
    )


__all__ = [
    "CallableClient",
    "CarrierDirectory",
    "HttpCarrierDirectory",
    "HttpSampleStore",
    "HttpTrainingInvocation",
    "SampleStore",
    "ServiceBundle",
    "TrainingInvocation",
    "build_http_services",
]
