"""Payloads exchanged between the approval orchestrators and activities."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

APPROVAL_EVENT = "ApprovalResult"

APPROVAL_ORCHESTRATION = "ApprovalOrchestration"
GENERATE_APPROVAL_REQUEST = "GenerateApprovalRequest"
COMPLETE_APPROVAL = "CompleteApproval"

GENERATE_UNORDERED_DATA_SET = "GenerateUnorderedDataSet"
GENERATE_ORDERED_DATA_SET = "GenerateOrderedDataSet"
REQUEST_APPROVAL = "RequestApproval"
CONFIRM_APPROVAL = "ConfirmApproval"
CONFIRM_REJECTION = "ConfirmRejection"


class DataFile(BaseModel):
    """A generated data set belonging to one orchestration."""

    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    orchestration_id: str = Field(alias="orchestrationId")


class ApprovalRequest(BaseModel):
    """Input shared by the approval sub-orchestrations."""

    model_config = ConfigDict(populate_by_name=True)

    orchestration_id: str = Field(alias="orchestrationId")
    num_data_files: int = Field(default=3, ge=1, alias="numDataFiles")

    def data_files(self) -> list[DataFile]:
        return [
            DataFile(file_name=f"file-{index}.json", orchestration_id=self.orchestration_id)
            for index in range(1, self.num_data_files + 1)
        ]


class ApprovalInput(BaseModel):
    """Optional client input for `ApprovalOrchestration`."""

    model_config = ConfigDict(populate_by_name=True)

    num_data_files: int | None = Field(default=None, ge=1, alias="numDataFiles")
    timeout_seconds: float | None = Field(default=None, gt=0, alias="timeoutSeconds")


class ApprovalDecision(BaseModel):
    """Outcome reported to the confirmation activities."""

    orchestration_id: str
    result: str
    reason: str | None = None
    files: list[DataFile] = Field(default_factory=list)
