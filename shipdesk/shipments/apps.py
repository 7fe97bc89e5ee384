import threading

from django.apps import AppConfig


class ShipmentsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'shipments'
    verbose_name = 'Shipments'

    def __init__(self, app_name, app_module):
        super().__init__(app_name, app_module)
        self._orchestrator = None
        self._orchestrator_lock = threading.Lock()

    @property
    def orchestrator(self):
        """Built from settings on first use, then shared by the whole process."""
        if self._orchestrator is None:
            with self._orchestrator_lock:
                if self._orchestrator is None:
                    from .services import ShipmentOrchestrator
                    self._orchestrator = ShipmentOrchestrator.from_settings()
        return self._orchestrator

    def set_orchestrator(self, orchestrator):
        """Swap the orchestrator, e.g. for one wired to a fake provider in tests."""
        self._orchestrator = orchestrator
