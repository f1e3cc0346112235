"""Payment gateway registry, keyed by PaymentMethod."""

from orderpay.errors import InvalidArgument
from orderpay.gateways.port import GatewayAdapter
from orderpay.models import PaymentMethod

_gateways: dict[PaymentMethod, GatewayAdapter] = {}


def _build(method: PaymentMethod) -> GatewayAdapter:
    from orderpay.gateways.card import CardGateway
    from orderpay.gateways.click import ClickGateway
    from orderpay.gateways.payme import PaymeGateway
    from orderpay.gateways.uzum import UzumGateway

    factories = {
        PaymentMethod.CLICK: ClickGateway.from_settings,
        PaymentMethod.PAYME: PaymeGateway.from_settings,
        PaymentMethod.UZUM: UzumGateway.from_settings,
        PaymentMethod.CARD: CardGateway.from_settings,
    }
    return factories[method]()


def resolve_method(value) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value).upper())
    except ValueError:
        raise InvalidArgument(f"Unsupported payment method: {value}")


def get_gateway(method: PaymentMethod) -> GatewayAdapter:
    """Return the adapter registered for ``method``, building it on first use."""
    method = resolve_method(method)
    if method not in _gateways:
        _gateways[method] = _build(method)
    return _gateways[method]


def set_gateway(gateway: GatewayAdapter) -> None:
    """Override the adapter for ``gateway.method`` (useful for tests)."""
    _gateways[gateway.method] = gateway


def reset_gateways() -> None:
    _gateways.clear()
