"""Read-only clients for the subsystems that own plots, files and staff.

The lifecycle service depends only on the Protocols below. The HTTP
implementations talk JSON to the neighbouring services; tests swap in
in-memory fakes.

Endpoints consumed:
    GET {plot_service}/plots/{plot_id}/readiness   -> {"is_ready_for_possession": bool}
    GET {plot_service}/plots/{plot_id}             -> plot summary object
    GET {file_service}/files/{file_id}/payment-status -> {"is_completed": bool}
    GET {file_service}/files/{file_id}             -> file summary object
    GET {staff_service}/staff/{officer_id}         -> officer summary object
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import quote

import httpx

if TYPE_CHECKING:
    from possession.core.config import CollaboratorSettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True, slots=True)
class PlotReadiness:
    plot_id: str
    is_ready_for_possession: bool


@dataclass(frozen=True, slots=True)
class FilePaymentStatus:
    file_id: str
    is_completed: bool


class CollaboratorError(Exception):
    """Base exception for collaborator lookups."""

    pass


class CollaboratorUnavailableError(CollaboratorError):
    """The collaborator could not be reached or answered with a server error."""

    def __init__(self, service: str, reason: str) -> None:
        self.service = service
        self.reason = reason
        super().__init__(f"{service} unavailable: {reason}")


class CollaboratorNotFoundError(CollaboratorError):
    """The collaborator does not know the requested entity."""

    def __init__(self, service: str, identifier: str) -> None:
        self.service = service
        self.identifier = identifier
        super().__init__(f"{service}: {identifier} not found")


class PlotDirectory(Protocol):
    async def get_plot_readiness(self, plot_id: str) -> PlotReadiness: ...

    async def get_plot_details(self, plot_id: str) -> dict[str, Any]: ...


class FileDirectory(Protocol):
    async def get_file_payment_status(self, file_id: str) -> FilePaymentStatus: ...

    async def get_file_details(self, file_id: str) -> dict[str, Any]: ...


class StaffDirectory(Protocol):
    async def get_officer_details(self, officer_id: str) -> dict[str, Any]: ...


class _JSONService:
    """Shared GET-and-decode logic for the HTTP collaborators."""

    service_name = "collaborator"

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def _get_json(self, path: str, identifier: str) -> dict[str, Any]:
        try:
            response = await self._client.get(path)
        except httpx.TransportError as e:
            logger.warning(
                "Collaborator request failed",
                extra={"service": self.service_name, "path": path, "error": str(e)},
            )
            raise CollaboratorUnavailableError(self.service_name, str(e)) from e

        if response.status_code == 404:
            raise CollaboratorNotFoundError(self.service_name, identifier)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CollaboratorUnavailableError(
                self.service_name, f"HTTP {e.response.status_code}"
            ) from e

        payload = response.json()
        if not isinstance(payload, dict):
            raise CollaboratorUnavailableError(self.service_name, "unexpected response body")
        return payload


class HttpPlotDirectory(_JSONService):
    service_name = "plot-service"

    async def get_plot_readiness(self, plot_id: str) -> PlotReadiness:
        payload = await self._get_json(f"/plots/{quote(plot_id, safe='')}/readiness", plot_id)
        return PlotReadiness(
            plot_id=plot_id,
            is_ready_for_possession=bool(payload.get("is_ready_for_possession", False)),
        )

    async def get_plot_details(self, plot_id: str) -> dict[str, Any]:
        return await self._get_json(f"/plots/{quote(plot_id, safe='')}", plot_id)


class HttpFileDirectory(_JSONService):
    service_name = "file-service"

    async def get_file_payment_status(self, file_id: str) -> FilePaymentStatus:
        payload = await self._get_json(
            f"/files/{quote(file_id, safe='')}/payment-status", file_id
        )
        return FilePaymentStatus(
            file_id=file_id, is_completed=bool(payload.get("is_completed", False))
        )

    async def get_file_details(self, file_id: str) -> dict[str, Any]:
        return await self._get_json(f"/files/{quote(file_id, safe='')}", file_id)


class HttpStaffDirectory(_JSONService):
    service_name = "staff-service"

    async def get_officer_details(self, officer_id: str) -> dict[str, Any]:
        return await self._get_json(f"/staff/{quote(officer_id, safe='')}", officer_id)


@dataclass
class Collaborators:
    """Collaborator handles, built once at startup and shared by reference."""

    plots: PlotDirectory
    files: FileDirectory
    staff: StaffDirectory
    _clients: tuple[httpx.AsyncClient, ...] = ()

    @classmethod
    def from_settings(cls, settings: CollaboratorSettings) -> Collaborators:
        """Create HTTP-backed collaborators from configuration."""
        timeout = httpx.Timeout(settings.timeout)
        plot_client = httpx.AsyncClient(base_url=settings.plot_service_url, timeout=timeout)
        file_client = httpx.AsyncClient(base_url=settings.file_service_url, timeout=timeout)
        staff_client = httpx.AsyncClient(base_url=settings.staff_service_url, timeout=timeout)
        return cls(
            plots=HttpPlotDirectory(plot_client),
            files=HttpFileDirectory(file_client),
            staff=HttpStaffDirectory(staff_client),
            _clients=(plot_client, file_client, staff_client),
        )

    async def aclose(self) -> None:
        for client in self._clients:
            await client.aclose()
