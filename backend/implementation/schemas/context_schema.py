"""
Task Context Schema - Input to one implementation run

The caller builds a TaskContext from the task it wants implemented.
It is never mutated by the engine.
"""
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class FileContent(BaseModel):
    """A project file handed to the planner as context"""
    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Path relative to the project root")
    content: str = Field(..., description="File content")
    language: Optional[str] = Field(None, description="Language hint for the code fence")


class TaskContext(BaseModel):
    """Everything the engine knows about the task being implemented"""
    model_config = ConfigDict(frozen=True)

    task_id: str = Field(..., description="Caller-supplied task identifier")
    title: str = Field(..., description="Short task title")
    description: str = Field(..., description="Natural-language task description")
    acceptance_criteria: Optional[str] = Field(None, description="Optional acceptance criteria")

    project_id: str = Field(..., description="Owning project identifier")
    project_path: str = Field(..., description="Absolute path to the project root")
    tech_stack: List[str] = Field(default_factory=list, description="Languages/frameworks in use")

    existing_files: Optional[List[str]] = Field(None, description="Known project file paths")
    related_files: Optional[List[FileContent]] = Field(None, description="Files relevant to the task")


__all__ = ["FileContent", "TaskContext"]
