from stock_ledger.models.item import Item
from stock_ledger.models.inventory import StockMovement
