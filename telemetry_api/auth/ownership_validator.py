"""Validación autoritativa de ownership contra BD.

Se usa cuando la caché de autorización no tiene una entrada válida.
Resuelve la credencial y carga el dispositivo en paralelo; luego exige
que la cuenta sea dueña del dispositivo, del grupo y de TODOS los
sensores pedidos.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from ..repository.device_repository import DeviceRepository
from ..repository.executor import run_blocking
from .authorization import AuthorizationEntry, AuthorizationError, AuthorizationReason
from .tokens import LOG_TOKEN_CONTEXT

logger = logging.getLogger(__name__)


class OwnershipValidator:

    def __init__(self, repository: DeviceRepository, token_context: str = LOG_TOKEN_CONTEXT):
        self._repository = repository
        self._token_context = token_context

    async def validate(
        self,
        credential: str,
        device_id: str,
        group_id: str,
        sensor_ids: Iterable[str],
    ) -> AuthorizationEntry:
        """Valida la petición y retorna la entrada a cachear.

        Raises:
            AuthorizationError: credencial inválida, dispositivo inexistente
                o ownership incompleto.
        """
        requested = sorted(set(sensor_ids))

        # Las dos lecturas son independientes: se lanzan juntas
        user_id, device = await asyncio.gather(
            run_blocking(self._repository.resolve_credential, credential, self._token_context),
            run_blocking(self._repository.get_device, device_id),
        )

        if not user_id:
            raise AuthorizationError(AuthorizationReason.BAD_CREDENTIAL)
        if device is None:
            raise AuthorizationError(AuthorizationReason.DEVICE_NOT_FOUND)

        owns_device = device.user_id == user_id
        owns_group = group_id in device.group_ids
        owns_sensors = all(sensor_id in device.sensor_ids for sensor_id in requested)

        if not (owns_device and owns_group and owns_sensors):
            logger.info(
                "[OWNERSHIP] Rejected device_id=%s group_id=%s device=%s group=%s sensors=%s",
                device_id,
                group_id,
                owns_device,
                owns_group,
                owns_sensors,
            )
            raise AuthorizationError(AuthorizationReason.OWNERSHIP_MISMATCH)

        group_sensor_ids = await run_blocking(
            self._repository.get_group_sensor_ids, group_id, requested
        )

        return AuthorizationEntry.build(
            device_id=device_id,
            group_id=group_id,
            sensor_ids=requested,
            group_sensor_ids=group_sensor_ids,
            user_id=user_id,
        )
