from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
import json


class ActionKind(str, Enum):
    BUY_AND_BURN = "buy_and_burn"
    WITHDRAW_BUY_AND_BURN = "withdraw_buy_and_burn"
    MINT_AND_SELL = "mint_and_sell"
    MINT_AND_ADD_LIQUIDITY = "mint_and_add_liquidity"
    HARVEST = "harvest"


@dataclass(frozen=True)
class Proposal:
    """Unexecuted recommendation: one action and its single amount argument."""

    action: ActionKind | None = None
    amount: int = 0

    @property
    def empty(self) -> bool:
        return self.action is None

    def encode(self) -> bytes:
        if self.action is None:
            return b""
        return json.dumps({"action": self.action.value, "amount": int(self.amount)}, sort_keys=True).encode()

    @classmethod
    def decode(cls, payload: bytes) -> "Proposal":
        if not payload:
            return cls()
        data = json.loads(payload.decode())
        return cls(action=ActionKind(data["action"]), amount=int(data.get("amount", 0)))

    def to_dict(self) -> dict:
        return {
            "action": self.action.value if self.action is not None else None,
            "amount": int(self.amount),
        }


NO_ACTION = Proposal()
