"""
Tests de integración por tenant, provisionamiento de empresa y listados
"""
import asyncio
import base64
from uuid import uuid4

from app.modules.fiscal.client import ProviderResponse
from app.modules.fiscal.models import FiscalIntegration

from conftest import CERT_PASSWORD, TEST_CNPJ, build_pkcs12


class TestIntegrationEndpoints:

    def test_create_and_read(self, client, tenant_id):
        response = client.post("/fiscal/integration", json={
            "tenant_id": str(tenant_id),
            "api_token": "  abc123  ",
            "environment": "homologacao",
            "cnpj_emitente": "11.222.333/0001-81",
        })
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["environment"] == "sandbox"
        assert data["api_token"] == "abc123"
        assert data["enabled"] is True
        assert data["provider"] == "focusnfe"
        assert data["cnpj_emitente"] == TEST_CNPJ

        stored = client.get("/fiscal/integration", params={"tenant_id": str(tenant_id)}).json()["data"]
        assert stored["id"] == data["id"]

    def test_update_keeps_single_row(self, client, tenant_id, db_session):
        client.post("/fiscal/integration", json={
            "tenant_id": str(tenant_id), "api_token": "abc", "company_id": "777",
        })
        response = client.post("/fiscal/integration", json={
            "tenant_id": str(tenant_id), "api_token": "def", "environment": "producao", "enabled": False,
        })
        data = response.json()["data"]
        assert data["environment"] == "production"
        assert data["api_token"] == "def"
        assert data["enabled"] is False
        # Not sent on the second call, so kept
        assert data["provider_company_id"] == "777"
        assert db_session.query(FiscalIntegration).filter_by(tenant_id=tenant_id).count() == 1

    def test_unknown_tenant_returns_null(self, client):
        response = client.get("/fiscal/integration", params={"tenant_id": str(uuid4())})
        assert response.status_code == 200
        assert response.json()["data"] is None

    def test_invalid_payloads(self, client, tenant_id):
        bad_requests = [
            {"tenant_id": str(tenant_id), "api_token": "abc", "environment": "staging"},
            {"tenant_id": str(tenant_id), "api_token": "   "},
            {"tenant_id": str(tenant_id), "api_token": "abc", "cnpj_emitente": "11222333000180"},
            {"tenant_id": "123", "api_token": "abc"},
        ]
        for body in bad_requests:
            response = client.post("/fiscal/integration", json=body)
            assert response.status_code == 400, body
            assert response.json()["category"] == "validation"


class TestCompanyProvisioning:

    def _company(self, tenant_id):
        return {
            "tenant_id": str(tenant_id),
            "nome": "Empresa Teste Ltda",
            "cnpj": "11.222.333/0001-81",
            "email": "fiscal@empresa.com.br",
            "telefone": "(11) 3333-4444",
            "logradouro": "Rua das Flores",
            "numero": "100",
            "bairro": "Centro",
            "municipio": "São Paulo",
            "uf": "SP",
            "cep": "01001-000",
            "inscricao_estadual": "123456789",
            "regime_tributario": 1,
        }

    def _upload(self, client, tenant_id):
        blob = build_pkcs12()
        client.post(
            "/fiscal/certificate",
            data={"tenant_id": str(tenant_id), "password": CERT_PASSWORD},
            files={"file": ("empresa.pfx", blob, "application/x-pkcs12")},
        )
        return blob

    def test_provision_sends_certificate_and_stores_result(self, client, integration, tenant_id, fake_provider):
        blob = self._upload(client, tenant_id)
        fake_provider.respond(200, {
            "id": 4321,
            "token_homologacao": "tok-homolog",
            "token_producao": "tok-prod",
            "certificado_valido_ate": "2027-05-01T23:59:59-03:00",
            "certificado_cnpj": TEST_CNPJ,
        })

        response = client.post("/fiscal/company/provision", json=self._company(tenant_id))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["provider_company_id"] == "4321"
        assert data["token_sandbox"] == "tok-homolog"
        assert data["token_production"] == "tok-prod"
        assert data["cert_cnpj"] == TEST_CNPJ
        assert CERT_PASSWORD not in response.text

        call = fake_provider.calls[-1]
        assert call["method"] == "company"
        assert call["company_id"] is None
        empresa = call["empresa"]
        assert empresa["cnpj"] == TEST_CNPJ
        assert empresa["cep"] == "01001000"
        assert empresa["senha_certificado"] == CERT_PASSWORD
        assert base64.b64decode(empresa["arquivo_certificado_base64"]) == blob

        stored = client.get("/fiscal/integration", params={"tenant_id": str(tenant_id)}).json()["data"]
        assert stored["provider_company_id"] == "4321"
        assert stored["cert_valid_to"] is not None

    def test_second_provision_updates_company(self, client, integration, tenant_id, fake_provider):
        self._upload(client, tenant_id)
        fake_provider.respond(200, {"id": 4321})
        client.post("/fiscal/company/provision", json=self._company(tenant_id))

        fake_provider.respond(200, {"id": 4321})
        client.post("/fiscal/company/provision", json=self._company(tenant_id))
        assert fake_provider.calls[-1]["company_id"] == "4321"

    def test_provider_rejection_is_400(self, client, integration, tenant_id, fake_provider):
        self._upload(client, tenant_id)
        fake_provider.respond(422, {"codigo": "erro_validacao", "mensagem": "CNPJ ja cadastrado"})

        response = client.post("/fiscal/company/provision", json=self._company(tenant_id))
        assert response.status_code == 400
        body = response.json()
        assert body["category"] == "provider"
        assert body["details"]["http_status"] == 422
        assert body["details"]["provider_error"]["codigo"] == "erro_validacao"

        stored = client.get("/fiscal/integration", params={"tenant_id": str(tenant_id)}).json()["data"]
        assert stored["provider_company_id"] is None

    def test_requires_certificate(self, client, integration, tenant_id, fake_provider):
        response = client.post("/fiscal/company/provision", json=self._company(tenant_id))
        assert response.status_code == 400
        assert response.json()["category"] == "configuration"
        assert fake_provider.calls == []

    def test_requires_integration(self, client, tenant_id, fake_provider):
        response = client.post("/fiscal/company/provision", json=self._company(tenant_id))
        assert response.status_code == 400
        assert response.json()["category"] == "configuration"

    def test_invalid_cnpj(self, client, integration, tenant_id):
        company = self._company(tenant_id)
        company["cnpj"] = "1122233300018"
        response = client.post("/fiscal/company/provision", json=company)
        assert response.status_code == 400
        assert response.json()["category"] == "validation"


class TestListings:

    def test_documents_are_paginated_newest_first(self, client, issue_document, tenant_id):
        first = issue_document(ref="pedido-a").json()
        issue_document(ref="pedido-b")
        last = issue_document(ref="pedido-c", doc_type="nfce").json()

        response = client.get("/fiscal/documents", params={"tenant_id": str(tenant_id), "limit": 2})
        assert response.status_code == 200
        body = response.json()
        assert body["pagination"] == {"total": 3, "limit": 2, "offset": 0, "has_more": True}
        assert [d["id"] for d in body["data"]][0] == last["fiscal_document_id"]

        page_two = client.get("/fiscal/documents", params={
            "tenant_id": str(tenant_id), "limit": 2, "offset": 2,
        }).json()
        assert page_two["pagination"]["has_more"] is False
        assert page_two["data"][0]["id"] == first["fiscal_document_id"]

        nfce = client.get("/fiscal/documents", params={"tenant_id": str(tenant_id), "doc_type": "nfce"}).json()
        assert nfce["pagination"]["total"] == 1

    def test_documents_are_tenant_scoped(self, client, issue_document):
        issue_document()
        response = client.get("/fiscal/documents", params={"tenant_id": str(uuid4())})
        assert response.json()["pagination"]["total"] == 0

    def test_document_listing_validation(self, client, tenant_id):
        assert client.get("/fiscal/documents").status_code == 400
        response = client.get("/fiscal/documents", params={"tenant_id": str(tenant_id), "doc_type": "cte"})
        assert response.status_code == 400
        assert response.json()["category"] == "validation"
        response = client.get("/fiscal/documents", params={"tenant_id": str(tenant_id), "limit": 0})
        assert response.status_code == 400

    def test_events_by_document_and_tenant(self, client, issue_document, tenant_id):
        issued = issue_document(ref="pedido-ev").json()
        client.post("/fiscal/webhook", json={"ref": "pedido-ev", "status": "autorizado"})
        issue_document(ref="pedido-other")

        by_document = client.get("/fiscal/events", params={
            "fiscal_document_id": issued["fiscal_document_id"],
        }).json()
        assert [e["event_type"] for e in by_document["data"]] == ["webhook", "submission"]

        by_tenant = client.get("/fiscal/events", params={"tenant_id": str(tenant_id)}).json()
        assert by_tenant["pagination"]["total"] == 3

    def test_events_need_a_filter(self, client):
        response = client.get("/fiscal/events")
        assert response.status_code == 400
        assert response.json()["category"] == "validation"


class TestAppShell:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_request_id_and_security_headers(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-1"})
        assert response.headers["X-Request-ID"] == "req-1"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"


def test_provider_response_helpers():
    response = ProviderResponse(status_code=201, body={"status": "autorizado"})
    assert response.ok
    assert response.field("status") == "autorizado"
    assert response.as_record() == {"http_status": 201, "body": {"status": "autorizado"}}
    assert ProviderResponse(status_code=500, body=None).field("status") is None


class TestProviderCallsLeaveEventLoopFree:
    """Outbound provider calls run in the threadpool, never on the event loop"""

    @staticmethod
    def _record_loop(seen, key):
        def hook():
            try:
                asyncio.get_running_loop()
                seen[key] = "event_loop"
            except RuntimeError:
                seen[key] = "worker_thread"
        return hook

    def test_issue_status_and_provision(self, client, issue_document, fake_provider, tenant_id):
        seen = {}

        fake_provider.during_call = self._record_loop(seen, "issue")
        issued = issue_document(ref="pedido-thread").json()

        fake_provider.during_call = self._record_loop(seen, "status")
        client.get("/fiscal/status", params={"fiscal_document_id": issued["fiscal_document_id"]})

        client.post(
            "/fiscal/certificate",
            data={"tenant_id": str(tenant_id), "password": CERT_PASSWORD},
            files={"file": ("empresa.pfx", build_pkcs12(), "application/x-pkcs12")},
        )
        fake_provider.respond(200, {"id": 1})
        fake_provider.during_call = self._record_loop(seen, "provision")
        client.post("/fiscal/company/provision", json=TestCompanyProvisioning()._company(tenant_id))

        assert seen == {"issue": "worker_thread", "status": "worker_thread", "provision": "worker_thread"}

    def test_webhook_is_served_while_provider_is_slow(self, client, issue_document, fake_provider):
        issue_document(ref="pedido-slow-a")
        seen = {}

        def webhook_during_submission():
            response = client.post("/fiscal/webhook", json={"ref": "pedido-slow-a", "status": "autorizado"})
            seen["webhook"] = response.status_code

        fake_provider.during_call = webhook_during_submission
        assert issue_document(ref="pedido-slow-b").status_code == 200
        assert seen == {"webhook": 200}
