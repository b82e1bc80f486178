"""Command line entry point.

Usage:
    embedgate --model-id BAAI/bge-small-en-v1.5 --port 8080

    # Or configure through the environment / .env:
    MODEL_ID=./models/my-encoder BACKEND=onnx embedgate

Flags override the matching environment variables.
"""
from __future__ import annotations

import argparse
from typing import List, Optional

import uvicorn

from embedgate.config import BackendKind, DType, Pool, Settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="embedgate",
        description="Serve a text embedding or sequence classification model",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--model-id", help="Hub repository id or local model directory")
    parser.add_argument("--revision", help="Hub revision (branch, tag or commit sha)")
    parser.add_argument("--dtype", choices=[d.value for d in DType])
    parser.add_argument("--pooling", choices=[p.value for p in Pool])
    parser.add_argument("--backend", choices=[b.value for b in BackendKind])
    parser.add_argument("--tokenization-workers", type=int)
    parser.add_argument("--max-concurrent-requests", type=int)
    parser.add_argument("--max-batch-tokens", type=int)
    parser.add_argument("--max-batch-requests", type=int)
    parser.add_argument("--max-client-batch-size", type=int)
    parser.add_argument("--scratch-dir")
    parser.add_argument("--hostname", dest="host")
    parser.add_argument("--port", type=int)
    return parser


def settings_from_args(argv: Optional[List[str]] = None) -> Settings:
    args = build_parser().parse_args(argv)
    return Settings.from_env(**vars(args))


def main(argv: Optional[List[str]] = None) -> None:
    settings = settings_from_args(argv)
    # Import here so the module-level app does not read settings before the flags
    from embedgate.app import create_app

    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
