"""Pydantic models for the HybridRAG API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class TextIngestionRequest(BaseModel):
    """Plain-text document produced by the upload/parsing collaborator."""

    title: str = Field(..., min_length=1, max_length=512, description="Display title used in citations")
    text: str = Field(..., min_length=1, description="Extracted document text")
    workspace_id: Optional[str] = Field(default=None, description="Workspace the document belongs to")
    document_id: Optional[str] = Field(default=None, description="Caller-assigned id; generated when omitted")


class IngestionResponse(BaseModel):
    document_id: str
    chunks: int = Field(..., ge=0, description="Passages produced by the chunker")
    embedded: int = Field(..., ge=0, description="Passages that received an embedding")
    failed: int = Field(..., ge=0, description="Passages left without an embedding")


class ReembedResponse(BaseModel):
    retried: int = Field(..., ge=0, description="Pending passages picked up for another attempt")
    embedded: int = Field(..., ge=0)
    failed: int = Field(..., ge=0, description="Passages still waiting for an embedding")


class ChatRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=4000, description="End-user question to answer")
    workspace_id: Optional[str] = Field(default=None, description="Search within this workspace")
    document_id: Optional[str] = Field(default=None, description="Search within this document")
    include_web_search: bool = Field(default=False, description="Always add live web results")

    @model_validator(mode="after")
    def _exactly_one_scope(self) -> "ChatRequest":
        if bool(self.workspace_id) == bool(self.document_id):
            raise ValueError("Provide exactly one of workspace_id or document_id")
        return self


class MessageModel(BaseModel):
    id: str
    role: Literal["user", "assistant"]
    content: str
    workspace_id: Optional[str] = None
    created_at: datetime


class ActivityPoint(BaseModel):
    date: str
    count: int


class WorkspaceAnalytics(BaseModel):
    workspace_id: str
    document_count: int
    total_chunks: int
    total_words: int
    activity: List[ActivityPoint]
