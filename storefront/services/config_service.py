import logging
from typing import Any, TypeVar

from fastapi import HTTPException, status
from pydantic import ValidationError
from sqlmodel import Session

from storefront.repositories.config_repo import ConfigRepository
from storefront.schemas.config import (
    MASK,
    ConfigModel,
    EmailTemplates,
    PaymentsConfig,
    ShippingConfig,
    SupportConfig,
    TaxConfig,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=ConfigModel)

# domain name (admin API) -> (storage key, model)
DOMAINS: dict[str, tuple[str, type[ConfigModel]]] = {
    "tax": ("tax-config", TaxConfig),
    "payments": ("payments-config", PaymentsConfig),
    "shipping": ("shipping-config", ShippingConfig),
    "support": ("support-config", SupportConfig),
    "email": ("email-templates", EmailTemplates),
}


def mask_secrets(model: ConfigModel) -> dict[str, Any]:
    """Dump a config model with every non-empty secret replaced by MASK."""
    data: dict[str, Any] = {}
    for name in type(model).model_fields:
        value = getattr(model, name)
        if isinstance(value, ConfigModel):
            data[name] = mask_secrets(value)
        elif name in model.secret_fields:
            data[name] = MASK if value else ""
        else:
            data[name] = value
    return data


def merge_secrets(incoming: ConfigModel, stored: ConfigModel) -> ConfigModel:
    """Keep stored secrets wherever the incoming model still holds MASK."""
    update: dict[str, Any] = {}
    for name in type(incoming).model_fields:
        value = getattr(incoming, name)
        if isinstance(value, ConfigModel):
            update[name] = merge_secrets(value, getattr(stored, name))
        elif name in incoming.secret_fields and value == MASK:
            update[name] = getattr(stored, name)
    return incoming.model_copy(update=update)


class ConfigService:
    """
    Typed get/set over AppConfig.

    Stored values that fail validation are logged and replaced by the
    model defaults so a bad row never takes checkout down.
    """

    def __init__(self, repo: ConfigRepository):
        self.repo = repo

    @staticmethod
    def _domain(domain: str) -> tuple[str, type[ConfigModel]]:
        try:
            return DOMAINS[domain]
        except KeyError:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Unknown config domain: {domain}",
            )

    def _load(self, session: Session, key: str, model: type[M]) -> M:
        raw = self.repo.get(session, key)
        if not raw:
            return model()
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            logger.warning("Invalid stored config %s, using defaults: %s", key, e)
            return model()

    # ----- Typed accessors -----

    def tax(self, session: Session) -> TaxConfig:
        return self._load(session, "tax-config", TaxConfig)

    def payments(self, session: Session) -> PaymentsConfig:
        return self._load(session, "payments-config", PaymentsConfig)

    def shipping(self, session: Session) -> ShippingConfig:
        return self._load(session, "shipping-config", ShippingConfig)

    def support(self, session: Session) -> SupportConfig:
        return self._load(session, "support-config", SupportConfig)

    def email_templates(self, session: Session) -> EmailTemplates:
        return self._load(session, "email-templates", EmailTemplates)

    # ----- Admin API -----

    def get_masked(self, session: Session, domain: str) -> dict[str, Any]:
        key, model = self._domain(domain)
        return mask_secrets(self._load(session, key, model))

    def update(self, session: Session, domain: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Validate and replace a domain's value.

        Raises:
            HTTPException(404): unknown domain.
            HTTPException(400): payload does not fit the domain model.
        """
        key, model = self._domain(domain)
        try:
            incoming = model.model_validate(payload)
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ()))
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid {domain} config: {field} {first.get('msg', '')}".strip(),
            )

        merged = merge_secrets(incoming, self._load(session, key, model))
        self.repo.upsert(session, key, merged.model_dump(mode="json"))
        logger.info("Config domain %s updated", domain)
        return mask_secrets(merged)
