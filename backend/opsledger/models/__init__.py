from .inventory import RawMaterial, RecurringProduct, StockMovement, LOT_MODELS
from .production import ProductionBatch, BatchConsumedMaterial, BatchOutput, ProcessedGood
from .tracking import WasteRecord, TransferRecord, IdentifierSequence

__all__ = [
    'RawMaterial', 'RecurringProduct', 'StockMovement', 'LOT_MODELS',
    'ProductionBatch', 'BatchConsumedMaterial', 'BatchOutput', 'ProcessedGood',
    'WasteRecord', 'TransferRecord', 'IdentifierSequence',
]
