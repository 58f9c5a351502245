"""orderflow.integrations — marketplace collaborator gateways.

Services reach the catalog, booking and escrow services only through a
gateway in this package.

Current gateways:
  marketplace_gateway.CatalogGateway
  marketplace_gateway.BookingGateway
  marketplace_gateway.EscrowGateway
"""
