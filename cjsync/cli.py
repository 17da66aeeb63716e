import argparse
import asyncio
import json
import logging
import signal
import sys
import uuid

from cjsync.bootstrap import Services, build_services
from cjsync.exceptions import CJSyncError
from cjsync.services.webhooks import register_webhooks
from cjsync.settings import settings

# 로그 설정
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("cjsync.cli")

# 명령 → 오케스트레이터 작업 이름 (run-sync는 --job으로 지정)
_JOB_COMMANDS = {
    "run-sync": None,
    "stock-sync": "stock",
    "review-sync": "reviews",
}


def _print(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _install_cancel_handler(services: Services) -> None:
    """SIGINT/SIGTERM 시 배치 작업을 협조적으로 취소."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, services.orchestrator.cancel)
        except NotImplementedError:
            # Windows 이벤트 루프
            pass


async def _run_command(args) -> int:
    services = build_services(settings)
    try:
        if args.command in _JOB_COMMANDS:
            _install_cancel_handler(services)
            job = _JOB_COMMANDS[args.command] or args.job
            summary = await services.orchestrator.run_job(job)
            _print(summary.to_dict())
            return 0 if summary.status in ("success", "disabled") else 2

        if args.command == "categories":
            summary = services.mapper.sync_unmapped_categories(services.supplier_id)
            rows = services.mapper.list_unmapped(services.supplier_id)
            _print({
                "sync": summary.to_dict(),
                "unmapped": [{"externalCategory": r.external_category, "productCount": r.product_count} for r in rows],
            })
            return 0

        if args.command == "map-category":
            result = services.mapper.apply_mapping(
                services.supplier_id, args.external, uuid.UUID(args.category_id)
            )
            _print({"mappingId": result.mapping_id, "productsUpdated": result.products_updated})
            return 0

        if args.command == "reconcile":
            result = await services.reconciler.reconcile_product(uuid.UUID(args.product_id))
            _print(result.to_dict())
            return 0

        if args.command == "verify-vid":
            variant = await services.reconciler.validate_vid(args.vid)
            _print({"vid": args.vid, "valid": variant is not None, "variant": variant.model_dump(mode="json") if variant else None})
            return 0 if variant else 3

        if args.command == "verify-variant":
            variant = await services.reconciler.verify_before_order(uuid.UUID(args.variant_id))
            _print({"valid": True, "variant": variant.model_dump(mode="json")})
            return 0

        if args.command == "register-webhooks":
            url = args.url or settings.webhook_public_url
            _print(await register_webhooks(services.dispatcher, url, enable=not args.disable))
            return 0

        logger.error(f"[CLI] Unsupported command: {args.command}")
        return 1
    except CJSyncError as e:
        logger.error(f"[CLI] {e.error_code}: {e.message}")
        _print(e.to_dict())
        return 1
    finally:
        await services.aclose()


def main():
    parser = argparse.ArgumentParser(description="CJ Dropshipping catalog sync CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    sync_parser = subparsers.add_parser("run-sync", help="Run a batch job")
    sync_parser.add_argument("--job", choices=["stock", "reviews", "reconcile"], default="stock")
    subparsers.add_parser("stock-sync", help="Refresh variant stock from supplier inventory")
    subparsers.add_parser("review-sync", help="Refresh product reviews and ratings")

    subparsers.add_parser("categories", help="Recompute and list unmapped supplier categories")

    map_parser = subparsers.add_parser("map-category", help="Apply a curator category mapping")
    map_parser.add_argument("--external", required=True, help="Supplier category text")
    map_parser.add_argument("--category-id", required=True, help="Internal category UUID")

    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile variant ids of one product")
    reconcile_parser.add_argument("--product-id", required=True)

    vid_parser = subparsers.add_parser("verify-vid", help="Look up a vid upstream")
    vid_parser.add_argument("--vid", required=True)

    variant_parser = subparsers.add_parser("verify-variant", help="Pre-order check for a local variant")
    variant_parser.add_argument("--variant-id", required=True)

    webhook_parser = subparsers.add_parser("register-webhooks", help="Register the webhook callback URL")
    webhook_parser.add_argument("--url", help="Public https callback URL")
    webhook_parser.add_argument("--disable", action="store_true")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    sys.exit(asyncio.run(_run_command(args)))


if __name__ == "__main__":
    main()
