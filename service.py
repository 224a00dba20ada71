import argparse
import asyncio
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from snoopy import __version__, setup_logger
from snoopy.common.chain import ChainGateway
from snoopy.common.config import Config
from snoopy.orchestrator.api import TaskApi
from snoopy.orchestrator.orchestrator import TaskOrchestrator
from snoopy.orchestrator.task_store import TaskStore
from snoopy.services.prover.prover_http import ProverHttp
from snoopy.services.store.store_clickhouse import EvidenceStoreClickHouse


async def read_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Snoopy fraud proof service")
    parser.add_argument(
        "-c",
        "--config",
        default="config/mainnet.yaml",
        help="Config file path (e.g. config/mainnet.yaml).",
        type=Path,
    )
    args = parser.parse_args()
    return args


async def main() -> None:
    args = await read_args()
    load_dotenv()
    config = Config.from_file(path=args.config)
    setup_logger(**config.logging.kwargs)
    logger.debug(f"Starting snoopy v{__version__} with config: {args.config}")

    store = EvidenceStoreClickHouse(**config.store.kwargs)
    await store.start()
    logger.debug(f"Opened query log store, database: '{store.database}'")

    chain = ChainGateway(**config.chain.kwargs)
    await chain.start()
    logger.debug(f"Connected to the chain: {chain.mask_network()}, signer: {chain.account_address}")

    prover = ProverHttp(**config.prover.kwargs)
    logger.debug(f"Using prover {prover}")

    task_store = TaskStore()
    orchestrator = TaskOrchestrator(
        task_store=task_store, store=store, chain=chain, prover=prover, **config.orchestrator.kwargs
    )

    api = TaskApi(task_store=task_store, **config.api.kwargs)
    await api.start()
    logger.debug(f"Started task API, enabled: {api.enabled}, port: {api.port}")

    try:
        logger.debug("Starting orchestrator loop...")
        await orchestrator.start_loop()
    except KeyboardInterrupt:
        logger.warning("Keyboard interrupt caught, exiting service")
    except BaseException as exc:
        logger.exception(f"Unknown exception caught, exiting service: {exc}")
    finally:
        await task_store.shutdown()
        await orchestrator.shutdown()
        await api.shutdown()
        await chain.shutdown()
        await store.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
