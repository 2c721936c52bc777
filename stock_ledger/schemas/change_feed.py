from pydantic import model_validator

from stock_ledger.core.constants import ChangeEventType
from stock_ledger.schemas.common import CamelModel
from stock_ledger.schemas.item import ItemIdentity, ItemOut


class ChangeEvent(CamelModel):
    """One Change Feed message: ``{"eventType", "new", "old"}``.

    ``old`` may carry only the prior identity (some feeds send just the key
    for deletes), in which case it parses as :class:`ItemIdentity`.
    """

    event_type: ChangeEventType
    new: ItemOut | None = None
    old: ItemOut | ItemIdentity | None = None

    @model_validator(mode="after")
    def validate_payload(self) -> "ChangeEvent":
        if self.event_type is ChangeEventType.DELETE:
            if self.old is None:
                raise ValueError("Delete events require the prior identity in 'old'")
        elif self.new is None:
            raise ValueError(f"{self.event_type.value} events require 'new'")
        return self

    @property
    def item_id(self) -> str:
        if self.event_type is ChangeEventType.DELETE:
            return self.old.id
        return self.new.id

    @classmethod
    def insert(cls, item: ItemOut) -> "ChangeEvent":
        return cls(event_type=ChangeEventType.INSERT, new=item)

    @classmethod
    def update(cls, item: ItemOut, *, old: ItemOut | None = None) -> "ChangeEvent":
        return cls(event_type=ChangeEventType.UPDATE, new=item, old=old)

    @classmethod
    def delete(cls, old: ItemOut | ItemIdentity) -> "ChangeEvent":
        return cls(event_type=ChangeEventType.DELETE, old=old)

    def to_message(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
