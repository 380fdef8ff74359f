"""SCEP protocol endpoint.

Implements the SCEP HTTP binding on a single path:
- GET /scep?operation=GetCACaps - Capability list
- GET /scep?operation=GetCACert - RA chain (DER or degenerate PKCS#7)
- GET /scep?operation=PKIOperation&message=<base64> - Enrollment
- POST /scep?operation=PKIOperation - Enrollment with a raw DER body
"""

from __future__ import annotations

import base64
import binascii
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from starlette.concurrency import run_in_threadpool

from scep_bridge.audit.logger import clear_correlation_id, set_correlation_id
from scep_bridge.exceptions import ScepMessageError
from scep_bridge.scep.service import Service

CONTENT_TYPE_CA_CERT = "application/x-x509-ca-cert"
CONTENT_TYPE_CA_RA_CERT = "application/x-x509-ca-ra-cert"
CONTENT_TYPE_PKI_MESSAGE = "application/x-pki-message"
CONTENT_TYPE_CAPS = "text/plain"

OPERATION_GET_CA_CAPS = "GetCACaps"
OPERATION_GET_CA_CERT = "GetCACert"
OPERATION_PKI_OPERATION = "PKIOperation"

router = APIRouter()


def get_service(request: Request) -> Service:
    """Dependency to get the SCEP service installed on the application."""
    service = getattr(request.app.state, "scep_service", None)
    if service is None:
        msg = "SCEP service not configured"
        raise RuntimeError(msg)
    return service


def decode_query_message(message: str) -> bytes:
    """Decode the base64 message parameter of a GET PKIOperation.

    Some clients send '+' unescaped, which arrives as a space. Line breaks
    from wrapped base64 are ignored.

    Raises:
        ScepMessageError: If the parameter is empty or not base64.
    """
    if not message:
        raise ScepMessageError.malformed(reason="missing message parameter")
    try:
        encoded = message.replace("\r", "").replace("\n", "").replace(" ", "+")
        return base64.b64decode(encoded, validate=True)
    except binascii.Error as e:
        raise ScepMessageError.malformed(reason=f"message parameter is not base64: {e}") from e


async def _pki_operation(service: Service, data: bytes) -> Response:
    cert_rep = await run_in_threadpool(service.pki_operation, data)
    return Response(content=cert_rep, media_type=CONTENT_TYPE_PKI_MESSAGE)


@router.get("/scep")
async def scep_get(
    service: Annotated[Service, Depends(get_service)],
    operation: str = "",
    message: str = "",
) -> Response:
    """Serve the GET operations of SCEP.

    Returns:
        Capabilities, the RA chain or a CertRep, depending on operation.

    Raises:
        ScepMessageError: For an unknown operation or a bad message parameter.
    """
    set_correlation_id()
    try:
        if operation == OPERATION_GET_CA_CAPS:
            caps = await run_in_threadpool(service.get_ca_caps)
            return Response(content=caps, media_type=CONTENT_TYPE_CAPS)

        if operation == OPERATION_GET_CA_CERT:
            body, count = await run_in_threadpool(service.get_ca_cert, message)
            media_type = CONTENT_TYPE_CA_CERT if count == 1 else CONTENT_TYPE_CA_RA_CERT
            return Response(content=body, media_type=media_type)

        if operation == OPERATION_PKI_OPERATION:
            return await _pki_operation(service, decode_query_message(message))

        raise ScepMessageError.unknown_operation(operation=operation)
    finally:
        clear_correlation_id()


@router.post("/scep")
async def scep_post(
    request: Request,
    service: Annotated[Service, Depends(get_service)],
    operation: str = "",
) -> Response:
    """Serve POSTPKIOperation: the body is the DER PKIMessage.

    Raises:
        ScepMessageError: For any operation other than PKIOperation.
    """
    set_correlation_id()
    try:
        if operation != OPERATION_PKI_OPERATION:
            raise ScepMessageError.unknown_operation(operation=operation)
        return await _pki_operation(service, await request.body())
    finally:
        clear_correlation_id()
