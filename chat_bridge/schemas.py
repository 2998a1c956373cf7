import json
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"] #defining the only allowed roles


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True) #read-only once received

    role: Role
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(default_factory=list) #conversation in turn order, may be empty


class InferenceRequest(BaseModel):
    model_id: str
    instructions: str
    input: List[ChatMessage] #system-filtered conversation
    stream: bool = True

    def payload(self) -> Dict[str, Any]:
        """The options object handed to the provider next to the model id."""
        return {
            "instructions": self.instructions,
            "input": [m.model_dump() for m in self.input],
            "stream": self.stream,
        }


class OutboundEvent(BaseModel):
    response: str

    def encode(self) -> bytes:
        # one compact JSON object per line, no enclosing array
        return (json.dumps({"response": self.response}, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


class ErrorBody(BaseModel):
    error: str
    details: str
