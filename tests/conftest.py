from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from emissor_nfe import config
from emissor_nfe.models.company import Company
from emissor_nfe.models.counterparty import Counterparty
from emissor_nfe.models.operation_nature import OperationNature
from emissor_nfe.models.order import Order

_ENV_VARS = (
    "NFE_AMBIENTE",
    "NFE_GATEWAY_TOKEN",
    "NFE_WEBHOOK_TOKEN",
    "NFE_EMISSION_MAX_ATTEMPTS",
    "NFE_SYNC_DISABLED",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Point config/data dirs at tmp_path and keep the OS keyring out of tests."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("EMISSOR_NFE_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("EMISSOR_NFE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setattr(config, "_get_keyring_token", lambda: None)


def write_record(config_dir: Path, collection: str, record_id: int, data: dict) -> Path:
    path = config_dir / collection / f"{record_id}.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.dump(data, allow_unicode=True))
    return path


# --- Raw records ---


@pytest.fixture
def company_dict() -> dict:
    return {
        "id": 1,
        "cnpj": "12.345.678/0001-95",
        "razao_social": "ACME COMERCIO LTDA",
        "inscricao_estadual": "110042490114",
        "regime_tributario": "3",
        "endereco": {
            "logradouro": "RUA DAS FLORES",
            "numero": "100",
            "bairro": "CENTRO",
            "municipio": "SAO PAULO",
            "uf": "SP",
            "cep": "01001-000",
        },
        "token_homologacao": "tok-hom",
    }


@pytest.fixture
def counterparty_dict() -> dict:
    return {
        "id": 7,
        "nome": "JOAO DA SILVA",
        "cpf_cnpj": "123.456.789-09",
        "endereco": {
            "logradouro": "AVENIDA PAULISTA",
            "numero": "1000",
            "bairro": "BELA VISTA",
            "municipio": "SAO PAULO",
            "uf": "SP",
            "cep": "01310-100",
        },
    }


@pytest.fixture
def nature_dict() -> dict:
    return {
        "id": 3,
        "descricao": "Venda de mercadoria",
        "regras": {
            "icms": [
                {"destinos": "MG", "cfop": "6102", "situacao_tributaria": "00", "aliquota": 12},
                {
                    "destinos": "qualquer",
                    "cfop": "5102",
                    "situacao_tributaria": "00 - Tributada integralmente",
                    "aliquota": 18,
                },
            ],
            "pis": [{"destinos": "qualquer", "situacao_tributaria": "01", "aliquota": 1.65}],
            "cofins": [{"destinos": "qualquer", "situacao_tributaria": "01", "aliquota": 7.6}],
        },
    }


@pytest.fixture
def order_dict() -> dict:
    return {
        "id": 42,
        "counterparty_id": 7,
        "valor_total": "100.00",
        "items": [
            {
                "id": 1,
                "quantidade": 1,
                "valor_unitario": "100.00",
                "produto": {"codigo": "P1", "descricao": "Produto teste", "ncm": "6109.10.00"},
            }
        ],
    }


# --- Models ---


@pytest.fixture
def company(company_dict: dict) -> Company:
    return Company.from_dict(company_dict)


@pytest.fixture
def counterparty(counterparty_dict: dict) -> Counterparty:
    return Counterparty.from_dict(counterparty_dict)


@pytest.fixture
def nature(nature_dict: dict) -> OperationNature:
    return OperationNature.from_dict(nature_dict)


@pytest.fixture
def order(order_dict: dict) -> Order:
    return Order.from_dict(order_dict)


# --- Record store ---


@pytest.fixture
def config_dir(tmp_path, company_dict, counterparty_dict, nature_dict, order_dict) -> Path:
    cfg = tmp_path / "config"
    write_record(cfg, "companies", 1, company_dict)
    write_record(cfg, "counterparties", 7, counterparty_dict)
    write_record(cfg, "natures", 3, nature_dict)
    write_record(cfg, "orders", 42, order_dict)
    return cfg
