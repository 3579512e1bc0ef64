from .catalog import Product, Customer, Supplier
from .inventory import InventoryRecord, InventoryMovement
from .orders import Order, OrderItem
from .purchasing import PurchaseOrder, PurchaseOrderLine
from .payments import Payment
from .carts import Cart, CartItem
from .documents import DocumentSequence

__all__ = [
    "Product",
    "Customer",
    "Supplier",
    "InventoryRecord",
    "InventoryMovement",
    "Order",
    "OrderItem",
    "PurchaseOrder",
    "PurchaseOrderLine",
    "Payment",
    "Cart",
    "CartItem",
    "DocumentSequence",
]
