"""Blue/green and canary release management."""

from kubesync.delivery.controller import ProgressiveDeliveryController, RolloutFailed

__all__ = ["ProgressiveDeliveryController", "RolloutFailed"]
