"""
Service bundle shared by the API routes.

Built once by ``codeintel.main.build_services`` and stored on
``app.state.services``; routes receive it through ``Depends(get_services)``.
"""
from dataclasses import dataclass

from fastapi import HTTPException, Request

from codeintel.core.config import Settings
from codeintel.services.ai.orchestration import RequestOrchestrator
from codeintel.services.ai.selection import ModelSelector
from codeintel.services.completion.context import CompletionContextClassifier
from codeintel.services.completion.ranking import RelevanceRanker
from codeintel.services.completion.service import CompletionService


@dataclass
class Services:
    settings: Settings
    selector: ModelSelector
    orchestrator: RequestOrchestrator
    classifier: CompletionContextClassifier
    ranker: RelevanceRanker
    completions: CompletionService

    async def aclose(self) -> None:
        for gateway in self.selector.get_gateways():
            await gateway.aclose()


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services
