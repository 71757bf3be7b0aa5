"""
Campaign Schemas

Campaigns come from the factory's directory. Only the fields settlement
needs are typed; everything else the factory sends is kept as extra.
"""

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Campaign(BaseModel):
    """One campaign as listed by the factory."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., validation_alias=AliasChoices("id", "campaignId", "campaign_id"))
    contract_address: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("contractAddress", "contract_address", "address"),
    )
    brand: Optional[str] = None
    active: bool = True

    def matches(self, campaign_id: str) -> bool:
        """The factory lists some campaigns under `campaignId` as well as `id`."""
        if self.id == campaign_id:
            return True
        return (self.model_extra or {}).get("campaignId") == campaign_id
