from enum import Enum

# Items below this many units are flagged as low stock. Not configurable per item.
LOW_STOCK_THRESHOLD = 1000


class ItemCategory(str, Enum):
    FEEDS = "feeds"
    FLOUR = "flour"


class ChangeEventType(str, Enum):
    INSERT = "Insert"
    UPDATE = "Update"
    DELETE = "Delete"
