"""Message submission and LLM instance endpoints for testing the pipeline."""
from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from taskrelay.core.errors import BrokerUnavailable, PublishTimeout
from taskrelay.core.messages import create_incoming_message
from taskrelay.messaging.gateway import MessageGateway
from taskrelay.runtime import get_gateway, get_llm_gateway
from taskrelay.services.llm_gateway import LLMGateway

router = APIRouter(prefix="/api", tags=["messages"])

MESSAGE_TEMPLATES: List[Dict[str, str]] = [
    {
        "name": "Sentiment Analysis",
        "content": "I am absolutely thrilled about this amazing new project. "
        "It's going to be fantastic and I can't wait to see the results!",
        "description": "Text for sentiment analysis",
    },
    {
        "name": "Math Calculation",
        "content": "Calculate the average of these numbers: 10, 20, 30, 45, 55",
        "description": "Mathematical operation request",
    },
    {
        "name": "String Processing",
        "content": "Please convert this text to uppercase: hello world",
        "description": "String manipulation task",
    },
    {
        "name": "Timer Request",
        "content": 'Set a timer for 5 seconds with message "Test completed"',
        "description": "Timer function execution",
    },
    {
        "name": "Repeating Timer",
        "content": "Run a 1 second timer every minute for the next 10 minutes",
        "description": "Repeat job execution",
    },
    {
        "name": "System Status",
        "content": "What is the current system status?",
        "description": "System health and status inquiry",
    },
]


class SubmitRequest(BaseModel):
    content: str = Field(..., min_length=1, description="Request text for the orchestrator")
    metadata: Dict[str, Any] = Field(default_factory=dict)


@router.post("/messages", status_code=status.HTTP_202_ACCEPTED)
async def submit_message(
    request: SubmitRequest,
    gateway: MessageGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    message = create_incoming_message(request.content, {**request.metadata, "testMode": True})
    try:
        await gateway.submit(message)
    except PublishTimeout as exc:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc)) from exc
    except BrokerUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return {"messageId": message.id, "timestamp": message.timestamp.isoformat()}


@router.get("/message-templates")
async def message_templates() -> Dict[str, List[Dict[str, str]]]:
    return {"templates": MESSAGE_TEMPLATES}


@router.get("/llm/instances")
async def llm_instances(llm: LLMGateway = Depends(get_llm_gateway)) -> Dict[str, Any]:
    return {
        "instances": [instance.to_dict() for instance in llm.list_instances()],
        "stats": llm.instance_stats(),
    }
