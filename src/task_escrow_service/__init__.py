"""Task Escrow Service - escrowed payment for client/freelancer work."""

__version__ = "0.1.0"
