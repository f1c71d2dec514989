import argparse
import asyncio
import os
import sys
import logging
from datetime import datetime
from typing import List, Optional

import aiohttp
from dotenv import load_dotenv

from crm_pipeline.application.opportunity_service import OpportunityService
from crm_pipeline.domain.exceptions import PipelineError
from crm_pipeline.domain.models import OpportunityFilter
from crm_pipeline.infrastructure.database import PostgresOpportunityRepository, PostgresReferenceChecker
from crm_pipeline.infrastructure.directory_client import HttpReferenceChecker


def configure_logging() -> None:
    # stdout carries the JSON reports, so log records go to stderr.
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )


configure_logging()
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crm-pipeline", description="Sales pipeline reports.")
    commands = parser.add_subparsers(dest="command", required=True)

    pipeline = commands.add_parser("pipeline", help="Active opportunities grouped by stage.")
    pipeline.add_argument("--owner-id")
    pipeline.add_argument("--company-id")

    stats = commands.add_parser("stats", help="Win rate, totals and weighted pipeline value.")
    stats.add_argument("--owner-id")
    stats.add_argument("--company-id")
    stats.add_argument("--created-from", type=datetime.fromisoformat)
    stats.add_argument("--created-to", type=datetime.fromisoformat)

    commands.add_parser("init-db", help="Create the opportunity tables.")
    return parser


def build_filter(args: argparse.Namespace) -> OpportunityFilter:
    return OpportunityFilter(
        owner_id=args.owner_id,
        company_id=args.company_id,
        created_from=getattr(args, "created_from", None),
        created_to=getattr(args, "created_to", None),
    )


async def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    # Load environment variables from .env file
    load_dotenv()

    db_url = os.getenv("DATABASE_URL")
    api_url = os.getenv("CRM_API_URL")
    api_token = os.getenv("CRM_API_TOKEN")

    if not db_url:
        logger.error("DATABASE_URL is not set in the environment.")
        sys.exit(1)

    repository = PostgresOpportunityRepository(db_url=db_url)

    async with aiohttp.ClientSession() as session:
        # Reference checks go through the CRM API when it is configured, otherwise straight to its tables.
        if api_url:
            companies = HttpReferenceChecker(session, api_url, "companies", api_token)
            contacts = HttpReferenceChecker(session, api_url, "contacts", api_token)
            users = HttpReferenceChecker(session, api_url, "users", api_token)
        else:
            companies = PostgresReferenceChecker(repository.engine, "companies")
            contacts = PostgresReferenceChecker(repository.engine, "contacts")
            users = PostgresReferenceChecker(repository.engine, "users")

        service = OpportunityService(
            repository=repository,
            companies=companies,
            contacts=contacts,
            users=users,
        )

        try:
            if args.command == "init-db":
                await repository.create_schema()
                logger.info("Opportunity tables created.")
            elif args.command == "pipeline":
                report = await service.pipeline(build_filter(args))
                print(report.model_dump_json(indent=2))
            elif args.command == "stats":
                stats = await service.stats(build_filter(args))
                print(stats.model_dump_json(indent=2))
        except PipelineError as e:
            logger.error(f"{type(e).__name__}: {e}")
            sys.exit(1)
        except KeyboardInterrupt:
            logger.info("Interrupted by user. Exiting gracefully.")
        except Exception as e:
            logger.exception(f"An unexpected error occurred: {e}")
            sys.exit(1)
        finally:
            await repository.engine.dispose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
