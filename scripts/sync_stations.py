# Script that syncs subway stations from the registries and fills in missing coordinates
from argparse import ArgumentParser
import logging
import json
from pathlib import Path

from dotenv import load_dotenv

from station_sync.reconciliation import (
    CoordinateReconciler,
    DuckDBStationStore,
    MolitDetailClient,
    NominatimGeocoder,
    ReconciliationConfig,
    ReconciliationOrchestrator,
    SeoulNameRegistryClient,
    SourceRateLimiter,
    StationNameResolver,
    StreamingBatchProcessor,
)
from station_sync.settings import settings


def build_orchestrator(store: DuckDBStationStore, config: ReconciliationConfig) -> ReconciliationOrchestrator:
    resolver = StationNameResolver()
    rate_limiter = SourceRateLimiter(config.intervals())
    geocoder = NominatimGeocoder(
        base_url=settings.nominatim_base_url,
        user_agent=settings.nominatim_user_agent,
        timeout=settings.http_timeout,
    )
    reconciler = CoordinateReconciler(resolver, geocoder, rate_limiter, config=config)
    return ReconciliationOrchestrator(
        name_source=SeoulNameRegistryClient(
            settings.seoul_api_key, settings.seoul_api_base_url, timeout=settings.http_timeout
        ),
        detail_source=MolitDetailClient(
            settings.molit_service_key, settings.molit_api_base_url, timeout=settings.http_timeout
        ),
        store=store,
        reconciler=reconciler,
        resolver=resolver,
        rate_limiter=rate_limiter,
        streaming=StreamingBatchProcessor(page_size=config.stream_page_size, show_progress=True),
        config=config,
    )


if __name__ == '__main__':
    load_dotenv()

    parser = ArgumentParser()
    parser.add_argument('--mode', '-m', choices=['full', 'coordinates', 'status'], default='full')
    parser.add_argument('--db', type=Path, default=settings.ddb_path)
    parser.add_argument('--page-size', '-p', type=int, default=None)
    parser.add_argument('--export-missing', '-e', type=Path, default=None)
    parser.add_argument('--log-file', type=Path, default=None)
    args = parser.parse_args()

    if args.log_file:
        args.log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        filename=str(args.log_file) if args.log_file else None,
    )

    overrides = {'stream_page_size': args.page_size} if args.page_size else {}
    config = ReconciliationConfig.from_settings(settings, **overrides)

    store = DuckDBStationStore(args.db)
    orchestrator = build_orchestrator(store, config)
    try:
        if args.mode == 'full':
            result = orchestrator.run_full_sync()
            print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        elif args.mode == 'coordinates':
            result = orchestrator.supplement_missing_coordinates(page_size=args.page_size)
            print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))

        status = orchestrator.system_status()
        status['store'] = store.get_summary()
        print(json.dumps(status, indent=2, ensure_ascii=False, default=str))

        if args.export_missing:
            n = store.export_missing_to_csv(args.export_missing)
            print(f'Exported {n} stations without coordinates to {args.export_missing}')
    finally:
        orchestrator.close()
        store.close()
