"""
afip_client — electronic invoicing client for the AFIP web services.

Obtains short-lived access tickets from the authentication service (WSAA)
and requests authorization codes (CAE) for invoices from the electronic
invoicing service (WSFE), keeping invoice numbers strictly correlative.
"""

__version__ = "0.1.0"
