"""Process entry point for SCEP Bridge.

Builds the SCEP service from settings, mounts it on a FastAPI application
and runs it under the server supervisor.
Run with: scep-bridge --cert ra.pem --certkey ra.key ... (see --help)
"""

from __future__ import annotations

import asyncio
import sys
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from scep_bridge import __version__
from scep_bridge.audit.logger import configure_logger, log_error, log_startup
from scep_bridge.ca.client import new_acme_client
from scep_bridge.ca.source import AcmeCertificateSource
from scep_bridge.config import load_settings
from scep_bridge.depot.store import Depot
from scep_bridge.exceptions import ScepBridgeError
from scep_bridge.routes.scep import router
from scep_bridge.scep.service import LoggingService, ScepService, ServiceWithoutRenewal
from scep_bridge.server.supervisor import Supervisor
from scep_bridge.server.transport import build_http_server
from scep_bridge.whitelist.verifier import CSRPasswordVerifier

if TYPE_CHECKING:
    from scep_bridge.config import Settings
    from scep_bridge.scep.service import Service


def build_service(settings: Settings) -> Service:
    """Assemble the SCEP service described by settings.

    Loads the whitelist and registers the ACME account; both failures are
    fatal.

    Args:
        settings: Settings with every mandatory field set.

    Returns:
        The engine, wrapped to drop Renewal and to log every call.

    Raises:
        WhitelistError: If the whitelist cannot be loaded.
        ConfigurationError: If a mandatory setting is missing.
        CAClientError: If ACME account setup fails.
    """
    depot = Depot(settings.required("cert_path"), settings.required("cert_key_path"))
    verifier = CSRPasswordVerifier.from_file(settings.required("whitelist_path"))
    acme_client = new_acme_client(
        settings.required("acme_email"),
        settings.required("acme_key_path"),
        settings.required("acme_url"),
        settings.required("dns_provider"),
    )

    service: Service = ScepService(
        depot,
        verifier=verifier,
        certificate_source=AcmeCertificateSource(acme_client),
    )
    service = ServiceWithoutRenewal(service)
    return LoggingService(service)


def create_app(service: Service) -> FastAPI:
    """Create the FastAPI application serving service.

    Args:
        service: The SCEP service behind /scep.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="SCEP Bridge",
        description="SCEP server issuing certificates through an ACME CA",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.scep_service = service
    app.include_router(router)

    @app.exception_handler(ScepBridgeError)
    async def scep_bridge_error_handler(
        _request: Request,
        exc: ScepBridgeError,
    ) -> JSONResponse:
        """Handle SCEP Bridge errors with appropriate HTTP status."""
        log_error(error=exc, context="request_handling")
        return JSONResponse(
            status_code=exc.http_status.value,
            content={
                "error": exc.__class__.__name__,
                "message": exc.message,
                "details": exc.details,
            },
        )

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint for monitoring."""
        return {"status": "healthy", "version": __version__}

    return app


def main(argv: list[str] | None = None) -> None:
    """Run SCEP Bridge until shutdown or SIGTERM.

    Startup errors are reported on stderr and exit with status 1.
    """
    try:
        settings = load_settings(argv)
        configure_logger(debug=settings.debug, log_file=settings.log_file)
        service = build_service(settings)
        server = build_http_server(create_app(service), settings.listen)
    except ScepBridgeError as exc:
        sys.exit(f"scep-bridge: {exc}")

    log_startup(version=__version__, listen=settings.listen)
    asyncio.run(Supervisor(server).run())


if __name__ == "__main__":
    main()
