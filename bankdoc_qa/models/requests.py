# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# FastAPI uses them for request body validation (automatic 422 errors)
# and for the OpenAPI documentation at /docs.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field


class AskRequest(BaseModel):
    """
    Request body for POST /ask and POST /ask/stream.

    A `[Tìm trong: name1, name2]` tag inside the question restricts a
    counting or summary question to the named documents.

    Example:
        {"question": "Lãi suất tiền gửi kỳ hạn 6 tháng là bao nhiêu?"}
    """

    question: str = Field(
        ...,
        min_length=1,
        max_length=4000,
        description="Câu hỏi về văn bản quy định ngân hàng",
        examples=["Lãi suất tiền gửi kỳ hạn 6 tháng là bao nhiêu?"],
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"question": "Điều kiện vay vốn mua nhà là gì?"},
                {
                    "question": (
                        "Có bao nhiêu điều khoản về phí? "
                        "[Tìm trong: Quy định tiền gửi tiết kiệm]"
                    ),
                },
            ]
        }
    )


class InvalidateCacheRequest(BaseModel):
    """Request body for POST /cache/invalidate."""

    pattern: str = Field(
        ...,
        min_length=1,
        description="Case-insensitive regular expression matched against cached questions",
        examples=["lãi suất"],
    )
