from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query, Request

from agile_bloom.backend.engine.config import provider_key_from_env
from agile_bloom.backend.engine.providers import MODEL_CATALOG, models_for_provider
from agile_bloom.backend.response import success_response
from agile_bloom.backend.schemas import ApiEnvelope


router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ApiEnvelope)
def models(request: Request, provider: Optional[str] = Query(default=None)):
	catalog = models_for_provider(provider) if provider else list(MODEL_CATALOG)
	providers = sorted({model.provider for model in MODEL_CATALOG})
	return success_response(
		request=request,
		data={
			"models": [model.as_dict() for model in catalog],
			"default_model": "local-echo",
			"providers": [
				{"name": name, "env_key_present": name == "Local" or bool(provider_key_from_env(name))}
				for name in providers
			],
		},
	)
