"""
Property listing models.

WHAT: Cached projection of the marketplace contract's property struct
WHY: Purchase validation and thread titles need owner, price and listing flag
HOW: Pydantic model normalized from the chain peer's raw struct
"""

from decimal import Decimal

from pydantic import BaseModel, Field
from web3 import Web3

from ..chain.types import OnChainProperty


class PropertyRecord(BaseModel):
    """Last known on-chain state of a property. Not authoritative."""

    product_id: int
    owner: str
    price: Decimal  # major currency unit (ether)
    price_wei: int = Field(ge=0)  # exact amount the contract charges
    is_listed: bool
    title: str = "Unnamed Property"
    category: str = ""
    images: list[str] = Field(default_factory=list)
    location: list[str] = Field(default_factory=list)
    documents: list[str] = Field(default_factory=list)
    description: str = ""
    nft_id: str = ""

    @classmethod
    def from_chain(cls, raw: OnChainProperty) -> "PropertyRecord":
        """Normalize a raw struct: lower-case owner, price in ether."""
        return cls(
            product_id=raw.product_id,
            owner=raw.owner.lower(),
            price=Decimal(Web3.from_wei(raw.price_wei, "ether")),
            price_wei=raw.price_wei,
            is_listed=raw.is_listed,
            title=raw.title or "Unnamed Property",
            category=raw.category,
            images=list(raw.images),
            location=list(raw.location),
            documents=list(raw.documents),
            description=raw.description,
            nft_id=raw.nft_id,
        )

    def with_chain_state(self, raw: OnChainProperty) -> "PropertyRecord":
        """Copy with owner, price and listing flag replaced from a fresh struct."""
        fresh = PropertyRecord.from_chain(raw)
        return self.model_copy(update={
            "owner": fresh.owner,
            "price": fresh.price,
            "price_wei": fresh.price_wei,
            "is_listed": fresh.is_listed,
        })
