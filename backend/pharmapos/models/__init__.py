from .pharmacy import Pharmacy, Worker
from .inventory import Product
from .prescriptions import Prescription
from .cash_sessions import CashSession
from .sales import Order, OrderLine
from .appointments import AppointmentPayment

__all__ = [
    'Pharmacy', 'Worker',
    'Product',
    'Prescription',
    'CashSession',
    'Order', 'OrderLine',
    'AppointmentPayment',
]
