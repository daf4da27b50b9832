from __future__ import annotations
import logging

from .core import ManagedToken, Token
from .errors import InsufficientBalance, PreconditionNotMet

logger = logging.getLogger(__name__)


class StabilityModule:
    """
    End-user mint/redeem of the managed token against the reference asset at
    1:1, each gated by a single spot-price threshold. Reference paid in goes to
    the controller; redemptions are pulled back out of it.
    """

    def __init__(self, controller, reference: Token, managed: ManagedToken,
                 mint_threshold: int, redeem_threshold: int, address: str = "stability_module") -> None:
        self.address = address
        self.controller = controller
        self.reference = reference
        self.managed = managed
        self.mint_threshold = int(mint_threshold)
        self.redeem_threshold = int(redeem_threshold)
        managed.add_minter(address)

    def _spot(self) -> int:
        return self.controller.price_snapshot().spot

    def mint_enabled(self) -> bool:
        return self._spot() >= self.mint_threshold

    def redeem_enabled(self) -> bool:
        return self._spot() <= self.redeem_threshold

    def mint(self, user: str, amount: int) -> int:
        if not self.mint_enabled():
            raise PreconditionNotMet("mint_gated", {"spot": self._spot(), "threshold": self.mint_threshold})
        self.reference.transfer(user, self.controller.address, amount)
        self.managed.mint_as(self.address, user, amount)
        logger.debug("stability mint user=%s amount=%d", user, amount)
        return amount

    def redeem(self, user: str, amount: int) -> int:
        if not self.redeem_enabled():
            raise PreconditionNotMet("redeem_gated", {"spot": self._spot(), "threshold": self.redeem_threshold})
        if self.managed.balance_of(user) < amount:
            raise InsufficientBalance("redeem_exceeds_balance", {"user": user, "amount": amount})
        self.controller.request_tokens_for(self.address, self.reference, amount, recipient=user)
        self.managed.burn(user, amount)
        logger.debug("stability redeem user=%s amount=%d", user, amount)
        return amount
