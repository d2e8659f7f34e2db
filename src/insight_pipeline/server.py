#!/usr/bin/env python3
"""
Insight Pipeline MCP Server

Exposes the analysis job pipeline as MCP tools over stdio.

Tools provided:
- analysis_submit: Enqueue an analysis job (returns immediately)
- analysis_status: Status and progress of a job
- analysis_progress: Progress of a job
- analysis_cancel: Cancel a queued or running job
- analysis_result: Result of a completed job
- analysis_cost_stats: Cumulative token and cost usage
- analysis_cost_estimate: Estimate tokens and cost before submitting
- analysis_cache_stats: Result cache statistics
"""

import asyncio
import json
import logging
import signal
import sys
import time
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    Tool,
    TextContent,
)

from .config import get_config
from .errors import PipelineError
from .models import AnalysisType, AnonymizationLevel
from .profiling import enable_logging
from .service import AnalysisPipeline

logger = logging.getLogger(__name__)


# Input validation constants
MAX_RESPONSES = 50_000
MAX_RESPONSE_LENGTH = 20_000
MAX_JOB_ID_LENGTH = 128

_JOB_ID_SCHEMA = {
    "type": "object",
    "properties": {
        "job_id": {"type": "string", "description": "Job id returned by analysis_submit"},
    },
    "required": ["job_id"],
}

_OPTIONS_SCHEMA = {
    "type": "object",
    "description": "Analysis options",
    "properties": {
        "language": {"type": "string", "description": "Response language code or 'auto'"},
        "anonymization_level": {
            "type": "string",
            "enum": [level.value for level in AnonymizationLevel],
        },
        "cultural_context": {"type": "string"},
        "provider": {"type": "string", "description": "Preferred provider name"},
        "fallback_provider": {"type": "string"},
        "cost_ceiling": {"type": "number", "description": "Max estimated USD for this job"},
        "batch_size": {"type": "integer", "minimum": 1},
        "max_retries": {"type": "integer", "minimum": 1},
        "priority": {"type": "integer", "description": "Higher runs first"},
        "custom_prompt": {"type": "string", "description": "Required for 'custom' analysis"},
        "k_anonymity": {"type": "integer", "minimum": 1},
        "partial_failure": {"type": "boolean"},
        "timeout_seconds": {"type": "number"},
    },
}


def _json_result(data: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, indent=2, ensure_ascii=False, default=str))]


def _error_result(code: str, message: str) -> list[TextContent]:
    return _json_result({"error": {"code": code, "message": message}})


def _validate_job_id(arguments: dict[str, Any]) -> str:
    job_id = arguments.get("job_id")
    if not isinstance(job_id, str) or not job_id or len(job_id) > MAX_JOB_ID_LENGTH:
        raise ValueError("job_id must be a non-empty string")
    return job_id


def _validate_responses(responses: Any) -> list:
    if not isinstance(responses, list) or not responses:
        raise ValueError("responses must be a non-empty list")
    if len(responses) > MAX_RESPONSES:
        raise ValueError(f"Too many responses: {len(responses)} (max {MAX_RESPONSES})")
    for index, response in enumerate(responses):
        text = response.get("text") if isinstance(response, dict) else response
        if isinstance(text, str) and len(text) > MAX_RESPONSE_LENGTH:
            raise ValueError(f"Response {index} exceeds {MAX_RESPONSE_LENGTH} characters")
    return responses


def create_server(pipeline: AnalysisPipeline) -> Server:
    """Create and configure the MCP server."""
    server = Server("insight-pipeline")

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """List available tools."""
        return [
            Tool(
                name="analysis_submit",
                description=(
                    "Submit free-text survey responses for analysis. Returns a job id "
                    "immediately; poll analysis_status for completion."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "questionnaire_id": {"type": "string"},
                        "analysis_type": {"type": "string", "enum": AnalysisType.values()},
                        "responses": {
                            "type": "array",
                            "description": "Response texts, or objects with 'text' and 'respondent_metadata'",
                            "items": {"type": ["string", "object"]},
                        },
                        "options": _OPTIONS_SCHEMA,
                    },
                    "required": ["questionnaire_id", "analysis_type", "responses"],
                },
            ),
            Tool(
                name="analysis_status",
                description="Get a job's status and progress.",
                inputSchema=_JOB_ID_SCHEMA,
            ),
            Tool(
                name="analysis_progress",
                description="Get a job's progress (percentage, current step, total steps).",
                inputSchema=_JOB_ID_SCHEMA,
            ),
            Tool(
                name="analysis_cancel",
                description="Cancel a queued or running job. Returns false if it already finished.",
                inputSchema=_JOB_ID_SCHEMA,
            ),
            Tool(
                name="analysis_result",
                description="Get the result of a completed job.",
                inputSchema=_JOB_ID_SCHEMA,
            ),
            Tool(
                name="analysis_cost_stats",
                description="Cumulative cost, tokens and calls per provider.",
                inputSchema={"type": "object", "properties": {}},
            ),
            Tool(
                name="analysis_cost_estimate",
                description="Estimate tokens and cost for a prospective job.",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "analysis_type": {"type": "string", "enum": AnalysisType.values()},
                        "responses": {"type": "array", "items": {"type": ["string", "object"]}},
                        "options": _OPTIONS_SCHEMA,
                    },
                    "required": ["analysis_type", "responses"],
                },
            ),
            Tool(
                name="analysis_cache_stats",
                description="Result cache size, hits, misses and expirations.",
                inputSchema={"type": "object", "properties": {}},
            ),
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool calls."""
        start_time = time.time()
        arguments = arguments or {}
        try:
            if name == "analysis_submit":
                _validate_responses(arguments.get("responses"))
                job_id = await pipeline.enqueue(arguments)
                result = _json_result({"job_id": job_id, "status": "queued"})
            elif name == "analysis_status":
                result = _json_result(await pipeline.get_status(_validate_job_id(arguments)))
            elif name == "analysis_progress":
                result = _json_result(await pipeline.get_progress(_validate_job_id(arguments)))
            elif name == "analysis_cancel":
                job_id = _validate_job_id(arguments)
                result = _json_result({"job_id": job_id, "cancelled": await pipeline.cancel(job_id)})
            elif name == "analysis_result":
                job_id = _validate_job_id(arguments)
                data = await pipeline.get_result(job_id)
                if data is None:
                    status = await pipeline.get_status(job_id)
                    result = _json_result({"job_id": job_id, "result": None, **status})
                else:
                    result = _json_result(data)
            elif name == "analysis_cost_stats":
                result = _json_result(pipeline.get_cost_stats())
            elif name == "analysis_cost_estimate":
                if arguments.get("analysis_type") not in AnalysisType.values():
                    raise ValueError(f"analysis_type must be one of {AnalysisType.values()}")
                result = _json_result(pipeline.get_cost_estimate(
                    arguments["analysis_type"],
                    _validate_responses(arguments.get("responses")),
                    arguments.get("options"),
                ))
            elif name == "analysis_cache_stats":
                result = _json_result(pipeline.get_cache_stats())
            else:
                result = [TextContent(type="text", text=f"Unknown tool: {name}")]

            logger.debug(f"[SERVER] {name} took {(time.time() - start_time) * 1000:.0f}ms")
            return result

        except PipelineError as e:
            return _error_result(e.code, e.message)
        except (ValueError, TypeError) as e:
            return _error_result("invalid_arguments", str(e))

    return server


async def run_server():
    """Run the MCP server with graceful shutdown."""
    shutdown_event = asyncio.Event()

    config = get_config()
    for problem in config.validate():
        print(f"Config warning: {problem}", file=sys.stderr)

    pipeline = AnalysisPipeline(config)
    server = create_server(pipeline)

    loop = asyncio.get_running_loop()

    def handle_shutdown(sig):
        print(f"\nReceived {sig.name}, shutting down gracefully...", file=sys.stderr)
        shutdown_event.set()

    # Register signal handlers (Unix only)
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

    await pipeline.start()
    try:
        async with stdio_server() as (read_stream, write_stream):
            server_task = asyncio.create_task(
                server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options(),
                )
            )

            # Wait for either server completion or shutdown signal
            done, pending = await asyncio.wait(
                [server_task, asyncio.create_task(shutdown_event.wait())],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    finally:
        await pipeline.stop()


def main():
    """Main entry point."""
    enable_logging()
    try:
        asyncio.run(run_server())
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Server error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
