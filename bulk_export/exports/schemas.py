"""
Pydantic schemas for export API requests and responses.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from bulk_export.exports.models import ExportRequest, ProgressPhase


class ExportParams(BaseModel):
    """Validated parameters of an export request"""

    output_fields: List[str] = Field(
        ...,
        min_length=1,
        description="Fields to export, in column order. Use * for every field",
    )

    filename: str = Field(
        ...,
        min_length=1,
        description="Download filename; a .csv suffix selects CSV, anything else JSON",
    )

    filter_expression: Optional[str] = Field(
        None,
        description="Optional filter applied on top of the keyset bound",
    )

    page_size: int = Field(
        512,
        gt=0,
        description="Rows fetched per page",
    )

    @field_validator("output_fields")
    @classmethod
    def strip_empty_fields(cls, value: List[str]) -> List[str]:
        fields = [name.strip() for name in value if name and name.strip()]
        if not fields:
            raise ValueError("at least one output field is required")
        return fields

    @field_validator("filename")
    @classmethod
    def reject_path_filenames(cls, value: str) -> str:
        if "/" in value or "\\" in value or '"' in value:
            raise ValueError("filename must not contain path separators or quotes")
        return value

    def to_request(self, source_name: str) -> ExportRequest:
        return ExportRequest(
            source_name=source_name,
            output_fields=self.output_fields,
            filename=self.filename,
            filter_expression=self.filter_expression or None,
            page_size=self.page_size,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "output_fields": ["id", "name", "tags"],
                "filename": "products.csv",
                "filter_expression": "price > 10",
                "page_size": 512,
            }
        }


class CountResponse(BaseModel):
    """Response schema for a collection row count"""

    collection_name: str = Field(..., description="Collection that was counted")

    row_count: int = Field(..., description="Number of rows in the collection")


class ProgressMessage(BaseModel):
    """Progress event as pushed to websocket subscribers"""

    phase: ProgressPhase
    filename: str
    rows_emitted: Optional[int] = None
    total_target: Optional[int] = None

    class Config:
        json_schema_extra = {
            "example": {
                "phase": "progress",
                "filename": "products.csv",
                "rows_emitted": 1024,
                "total_target": 15432,
            }
        }
