"""
Hotspot Billing - payment reconciliation service for a WiFi hotspot business.

Collects plan and voucher fees through M-Pesa STK push and reconciles the
asynchronous provider callbacks against pending payment records.
"""

__version__ = "1.0.0"
