"""
Code Oracle - LLM access for planning and content synthesis

The Planner and StepExecutor only see the CodeOracle interface: text in,
text out. LangChainCodeOracle is the production implementation; tests
pass their own CodeOracle subclass.
"""
import asyncio
import logging
from typing import Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate

import config
from implementation.errors import ImplementationError

logger = logging.getLogger(__name__)


class OracleError(ImplementationError):
    """Raised when the oracle cannot produce a response"""

    def __init__(self, message: str, code: str = "ORACLE_ERROR"):
        super().__init__(message, code)


class CodeOracle:
    """Interface consumed by the Planner and the StepExecutor"""

    async def generate_plan(self, prompt: str) -> str:
        raise NotImplementedError

    async def generate_content(self, prompt: str) -> str:
        raise NotImplementedError

    async def refine(self, prompt: str) -> str:
        raise NotImplementedError


PLANNER_SYSTEM_PROMPT = (
    "You are an expert software engineer creating detailed, step-by-step implementation plans. "
    "You always answer with a single JSON object and nothing else."
)

CONTENT_SYSTEM_PROMPT = (
    "You are an expert software engineer writing production-ready source files. "
    "You answer with the raw file content only: no explanation and no markdown code fences."
)

REFINE_SYSTEM_PROMPT = (
    "You are refining an implementation plan based on user feedback. "
    "You always answer with a single JSON object that keeps the original plan's structure."
)


class LangChainCodeOracle(CodeOracle):
    """
    CodeOracle backed by a LangChain chat model

    Each call runs prompt_template | llm | StrOutputParser under a timeout.
    """

    def __init__(self, llm: BaseChatModel, timeout_ms: int = config.IMPLEMENTATION_TIMEOUT_MS):
        self.llm = llm
        self.timeout_ms = timeout_ms

    async def generate_plan(self, prompt: str) -> str:
        return await self._ask(PLANNER_SYSTEM_PROMPT, prompt, "generate_plan")

    async def generate_content(self, prompt: str) -> str:
        return await self._ask(CONTENT_SYSTEM_PROMPT, prompt, "generate_content")

    async def refine(self, prompt: str) -> str:
        return await self._ask(REFINE_SYSTEM_PROMPT, prompt, "refine")

    async def _ask(self, system_prompt: str, prompt: str, operation: str) -> str:
        prompt_template = ChatPromptTemplate.from_messages([
            ("system", system_prompt),
            ("user", "{prompt}"),
        ])
        chain = prompt_template | self.llm | StrOutputParser()

        try:
            result = await asyncio.wait_for(
                chain.ainvoke({"prompt": prompt}),
                timeout=self.timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.error(f"[CodeOracle] {operation} timed out after {self.timeout_ms}ms")
            raise OracleError(f"Oracle {operation} timed out after {self.timeout_ms}ms", "ORACLE_TIMEOUT")
        except Exception as e:
            logger.error(f"[CodeOracle] {operation} failed: {e}", exc_info=True)
            raise OracleError(f"Oracle {operation} failed: {e}") from e

        logger.info(f"[CodeOracle] {operation} returned {len(result)} characters")
        return result


class TimedCodeOracle(CodeOracle):
    """Bounds every call of another oracle by a per-run timeout"""

    def __init__(self, oracle: CodeOracle, timeout_ms: int):
        self.oracle = oracle
        self.timeout_ms = timeout_ms

    async def generate_plan(self, prompt: str) -> str:
        return await self._bounded(self.oracle.generate_plan(prompt), "generate_plan")

    async def generate_content(self, prompt: str) -> str:
        return await self._bounded(self.oracle.generate_content(prompt), "generate_content")

    async def refine(self, prompt: str) -> str:
        return await self._bounded(self.oracle.refine(prompt), "refine")

    async def _bounded(self, call, operation: str) -> str:
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.error(f"[CodeOracle] {operation} timed out after {self.timeout_ms}ms")
            raise OracleError(f"Oracle {operation} timed out after {self.timeout_ms}ms", "ORACLE_TIMEOUT")


def create_code_oracle(timeout_ms: Optional[int] = None) -> LangChainCodeOracle:
    """
    Build the default oracle from config

    Raises:
        ValueError: If GEMINI_API_KEY is not configured
    """
    if not config.GEMINI_API_KEY:
        raise ValueError("GEMINI_API_KEY not found in environment variables")

    from langchain_google_genai import ChatGoogleGenerativeAI

    llm = ChatGoogleGenerativeAI(
        google_api_key=config.GEMINI_API_KEY,
        model=config.AI_MODEL,
        temperature=config.AI_TEMPERATURE,
        max_retries=config.AI_MAX_RETRIES,
        request_timeout=config.AI_REQUEST_TIMEOUT,
        transport="rest",  # Use REST API instead of gRPC to avoid proxy issues
    )
    return LangChainCodeOracle(llm, timeout_ms=timeout_ms or config.IMPLEMENTATION_TIMEOUT_MS)


__all__ = [
    "CodeOracle",
    "LangChainCodeOracle",
    "TimedCodeOracle",
    "OracleError",
    "create_code_oracle",
]
