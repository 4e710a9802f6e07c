"""Services for device registration, targeting and dispatch."""
from .registry import DeviceRegistry, device_registry, BROADCAST
from .targets import TargetResolver, target_resolver
from .gateway import PushGateway, GatewayResult, DeliveryResult, build_gateway
from .dispatcher import DispatchEngine, CampaignDraft, DispatchSummary, dispatch_engine

__all__ = [
    "DeviceRegistry",
    "device_registry",
    "BROADCAST",
    "TargetResolver",
    "target_resolver",
    "PushGateway",
    "GatewayResult",
    "DeliveryResult",
    "build_gateway",
    "DispatchEngine",
    "CampaignDraft",
    "DispatchSummary",
    "dispatch_engine",
]
