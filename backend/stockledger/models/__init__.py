from .catalog import Product, Size
from .stock import StockRecord, HistoryEntry
from .sales import Sale, SaleItem
from .orders import Order, OrderItem
from .adjustments import Adjustment, AdjustmentLine

__all__ = [
    'Product', 'Size',
    'StockRecord', 'HistoryEntry',
    'Sale', 'SaleItem',
    'Order', 'OrderItem',
    'Adjustment', 'AdjustmentLine',
]
