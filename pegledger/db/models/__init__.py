from pegledger.db.base import Base
from .peg_event import PegEvent
from .federation_address import FederationAddress
from .federation_utxo import FederationUtxo
from .progress import Progress

__all__ = [
    "Base",
    "PegEvent",
    "FederationAddress",
    "FederationUtxo",
    "Progress",
]
