from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from sundaykit.logging import get_logger

if TYPE_CHECKING:
    from sundaykit.config import Settings
    from sundaykit.service.northflank import NorthflankClient

logger = get_logger(__name__)


def _is_workspace_service(service: dict) -> bool:
    name = service.get("name") or ""
    image = ((service.get("spec") or {}).get("image")) or ""
    return "n8n" in name or "n8nio" in image


class SharedServices:
    """Wire a user project to the shared Chroma and Ollama deployments.

    Everything here is best effort: failures are logged and never reach the
    provisioning loop.
    """

    def __init__(self, platform: "NorthflankClient", settings: "Settings") -> None:
        self.platform = platform
        self.settings = settings

    async def grant_ingress(self, user_project_id: str) -> None:
        for label, service_project_id in (
            ("chroma", self.settings.chroma_project_id),
            ("ollama", self.settings.ollama_project_id),
        ):
            if service_project_id:
                await self._add_ingress(service_project_id, user_project_id, label)

    async def _add_ingress(
        self, service_project_id: str, user_project_id: str, label: str
    ) -> None:
        try:
            current = await self.platform.get_project_settings(service_project_id)
            if current is None:
                logger.warning("shared_ingress_project_missing", service=label, project_id=service_project_id)
                return
            ingress = ((current.get("networking") or {}).get("ingress")) or {}
            projects = list(ingress.get("projects") or [])
            if user_project_id in projects:
                logger.debug("shared_ingress_present", service=label, project_id=user_project_id)
                return
            await self.platform.patch_project_settings(
                service_project_id,
                {"networking": {"ingress": {"projects": [*projects, user_project_id]}}},
            )
            logger.info("shared_ingress_added", service=label, project_id=user_project_id)
        except Exception as exc:
            logger.warning(
                "shared_ingress_failed",
                service=label,
                project_id=user_project_id,
                error=str(exc),
            )

    async def configure_workspace_env(self, project_id: str, user_id: str) -> Optional[str]:
        """Point the workspace service at the shared services; returns the service id patched."""
        try:
            services = await self.platform.list_services(project_id)
            service = next((s for s in services if _is_workspace_service(s)), None)
            if service is None:
                logger.warning("workspace_service_missing", project_id=project_id)
                return None
            await self.platform.patch_service_env(
                project_id,
                service["id"],
                {
                    "CHROMA_URL": self.settings.chroma_internal_url,
                    "OLLAMA_URL": self.settings.ollama_internal_url,
                    "USER_ID": user_id,
                },
            )
            logger.info("workspace_env_configured", project_id=project_id, service_id=service["id"])
            return service["id"]
        except Exception as exc:
            logger.warning("workspace_env_failed", project_id=project_id, error=str(exc))
            return None
