from .inventory import Product, StockBatch, StockMovement
from .sales import Sale, SaleLine
from .documents import StocktakeSession, StocktakeItem, DocumentSequence
from .alerts import Alert
from .audit import AuditEvent, DataMigration

__all__ = [
    'Product', 'StockBatch', 'StockMovement',
    'Sale', 'SaleLine',
    'StocktakeSession', 'StocktakeItem', 'DocumentSequence',
    'Alert',
    'AuditEvent', 'DataMigration',
]
