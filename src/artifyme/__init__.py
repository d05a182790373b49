"""ArtifyMe — image style transfer SaaS backend.

The API layer that authenticates users through Keycloak, accepts image
transformation jobs, hands them to the n8n workflow engine, tracks their
status, and settles payments coming from Stripe and Asaas.
"""

__version__ = "0.1.0"
