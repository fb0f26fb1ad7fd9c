import pytest

from gescom.app import Gescom
from gescom.models.client import Address, Client
from gescom.models.product import Product
from gescom.services.authz import Actor
from gescom.services.notification_service import RecordingNotifier


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(notifier):
    """Application complète sur dépôts mémoire, plan comptable par défaut."""
    g = Gescom.in_memory(notifier=notifier)
    g.chart.seed_defaults()
    return g


@pytest.fixture
def admin():
    return Actor(id="u-admin", role="ADMIN")


@pytest.fixture
def accountant():
    return Actor(id="u-compta", role="ACCOUNTANT")


@pytest.fixture
def manager():
    return Actor(id="u-manager", role="MANAGER")


@pytest.fixture
def user():
    return Actor(id="u-user", role="USER")


@pytest.fixture
def client(app):
    return app.clients.add_client(Client(
        company_name="Sono Events SARL",
        contact_name="Camille Martin",
        email="contact@sono-events.fr",
        billing_address=Address(street="12 rue des Lilas", zip_code="69003", city="Lyon"),
    ))


@pytest.fixture
def other_client(app):
    return app.clients.add_client(Client(company_name="Salle Polyvalente de Brignais"))


@pytest.fixture
def speaker(app):
    """Produit stocké : 12 en stock, alerte à 2."""
    return app.catalog.add_product(Product(
        ref="ENC-01",
        name="Enceinte active 500W",
        unit_price_ht_cent=25000,
        vat_rate=20.0,
        stock_quantity=12,
        critical_stock_threshold=2,
    ))


@pytest.fixture
def installation(app):
    return app.catalog.add_product(Product(
        ref="PRE-01",
        name="Installation et réglages",
        unit_price_ht_cent=8000,
        is_service=True,
    ))


@pytest.fixture
def make_quote(app, client, speaker, user):
    """Devis de 2 enceintes (500 HT, 100 TVA, 600 TTC) amené au statut demandé."""
    path = {
        "DRAFT": [],
        "SENT": ["SENT"],
        "ACCEPTED": ["SENT", "ACCEPTED"],
        "REJECTED": ["SENT", "REJECTED"],
        "EXPIRED": ["SENT", "EXPIRED"],
    }

    def _make(status="DRAFT", quantity=2):
        quote = app.quotes.create(
            {"client_id": client.id, "items": [{"product_id": speaker.id, "quantity": quantity}]},
            actor=user,
        )
        for target in path[status]:
            quote = app.quotes.transition(quote.id, target, actor=user)
        return quote

    return _make


@pytest.fixture
def make_invoice(app, client, user):
    """Facture libre de 1000 HT / 200 TVA / 1200 TTC."""

    def _make(send=False, **extra):
        invoice = app.invoices.create(
            {
                "client_id": client.id,
                "items": [{"product_name": "Prestation sonorisation", "quantity": 1, "unit_price_ht_cent": 100000, "vat_rate": 20.0}],
                **extra,
            },
            actor=user,
        )
        if send:
            invoice = app.invoices.send(invoice.id, actor=user)
        return invoice

    return _make
