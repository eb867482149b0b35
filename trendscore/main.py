import logging
import sys
from contextlib import asynccontextmanager
from typing import Callable, Optional
from fastapi import Body, FastAPI, Header
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from trendscore.config import Settings, settings
from trendscore.database import Repository, create_repository
from trendscore.errors import NotFoundError, ValidationError
from trendscore.scheduler import ScoreUpdateScheduler
from trendscore.services.age_decay import matches_filter, timeline_text, trend_badge, trend_bucket
from trendscore.services.discord_notifier import DiscordNotifier
from trendscore.services.merge_engine import MergeEngine
from trendscore.services.recalculation import RecalculationJob, utcnow
from trendscore.services.score_calculator import review_adjustment_for_product
from trendscore.services.signal_ingestor import SignalIngestor

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)

TRENDING_FILTERS = ("hot", "rising", "all", "recent")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message}
    )


def create_app(
    repository: Optional[Repository] = None,
    clock: Callable = utcnow,
    notifier: Optional[DiscordNotifier] = None,
    config: Settings = settings
) -> FastAPI:
    """Wire the services around one store and expose them over HTTP"""
    repository = repository or create_repository(config)
    notifier = notifier or DiscordNotifier()
    recalculation = RecalculationJob(repository, clock=clock)
    merge_engine = MergeEngine(repository, recalculation=recalculation)
    ingestor = SignalIngestor(repository, recalculation=recalculation)
    scheduler = ScoreUpdateScheduler(recalculation, merge_engine, notifier=notifier, config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        logger.info("Starting Trend Score Engine...")
        logger.info(f"Environment: {config.environment}, storage: {config.storage_backend}")

        if hasattr(repository, 'init_tables'):
            repository.init_tables()

        scheduler.start()

        yield

        logger.info("Shutting down...")
        scheduler.shutdown()

    app = FastAPI(
        title="Trend Score Engine",
        description="Signal scoring and product deduplication for trending products",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.repository = repository
    app.state.recalculation = recalculation
    app.state.merge_engine = merge_engine
    app.state.ingestor = ingestor
    app.state.scheduler = scheduler

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "environment": config.environment,
            "cron_schedule": f"{config.cron_hour:02d}:{config.cron_minute:02d} UTC"
        }

    @app.get("/api/status")
    async def api_status():
        """API status endpoint"""
        last = scheduler.last_report
        return {
            "name": "Trend Score Engine",
            "version": "1.0.0",
            "status": "running",
            "last_run": last.model_dump(mode="json") if last else None
        }

    @app.post("/api/signals")
    async def ingest_signal(payload: dict = Body(...), rescore: bool = False):
        """Accept a scraper observation"""
        try:
            signal = ingestor.ingest(payload, rescore=rescore)
            return {"success": True, "signal": signal.model_dump(mode="json")}
        except ValidationError as e:
            return _error(400, str(e))
        except NotFoundError as e:
            return _error(404, str(e))
        except Exception as e:
            logger.error(f"Error ingesting signal: {e}")
            return _error(500, str(e))

    @app.post("/api/products/{product_id}/reviews")
    async def ingest_review(product_id: str, payload: dict = Body(...)):
        """Accept a marketplace review"""
        try:
            review = ingestor.ingest_review(product_id, payload)
            return {"success": True, "review": review.model_dump(mode="json")}
        except ValidationError as e:
            return _error(400, str(e))
        except NotFoundError as e:
            return _error(404, str(e))
        except Exception as e:
            logger.error(f"Error ingesting review for {product_id}: {e}")
            return _error(500, str(e))

    @app.get("/api/products")
    async def get_products(filter: str = "all", limit: int = 100):
        """Trending products ranked by current score plus review adjustment"""
        if filter not in TRENDING_FILTERS:
            return _error(400, f"Invalid filter: {filter}. Use one of {', '.join(TRENDING_FILTERS)}")

        try:
            now = clock()
            ranked = []
            for product in repository.list_products():
                if not matches_filter(product.current_score, product.days_trending, filter):
                    continue
                adjustment = review_adjustment_for_product(
                    product, repository.get_reviews(product.id), now=now
                )
                ranked.append({
                    **product.model_dump(mode="json"),
                    "review_adjustment": adjustment,
                    "rank_score": product.current_score + adjustment,
                    "bucket": trend_bucket(product.current_score),
                    "badge": trend_badge(product.current_score),
                    "timeline": timeline_text(product.days_trending),
                })

            ranked.sort(key=lambda p: p["rank_score"], reverse=True)
            ranked = ranked[:limit]
            return {
                "success": True,
                "count": len(ranked),
                "filter": filter,
                "products": ranked
            }
        except Exception as e:
            logger.error(f"Error fetching products: {e}")
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": str(e), "products": []}
            )

    @app.get("/api/products/{product_id}/score")
    async def get_score(product_id: str):
        """Score, status and sparkline for one product"""
        try:
            return {"success": True, **recalculation.score_view(product_id).model_dump(mode="json")}
        except NotFoundError as e:
            return _error(404, str(e))
        except Exception as e:
            logger.error(f"Error fetching score for {product_id}: {e}")
            return _error(500, str(e))

    @app.get("/api/products/{product_id}/sparkline")
    async def get_sparkline(product_id: str):
        """Last 7 days of score history"""
        try:
            return {"scores": recalculation.sparkline(product_id)}
        except Exception as e:
            logger.error(f"Error fetching sparkline data: {e}")
            return JSONResponse(
                status_code=500,
                content={"error": "Failed to fetch sparkline data"}
            )

    @app.post("/api/products/{product_id}/recalculate")
    async def recalculate_product(product_id: str):
        """On-demand recompute of one product"""
        try:
            view = recalculation.recalculate_product(product_id)
            return {"success": True, **view.model_dump(mode="json")}
        except NotFoundError as e:
            return _error(404, str(e))
        except Exception as e:
            logger.error(f"Error recalculating {product_id}: {e}")
            return _error(500, str(e))

    @app.post("/api/products/{product_id}/merge")
    async def merge_product(product_id: str, payload: dict = Body(default={})):
        """Merge a duplicate product into an existing product"""
        result = merge_engine.merge(product_id, payload.get("target_product_id"))

        if result.requires_attention:
            await notifier.send_merge_failure(result)

        status_code = {
            "merged": 200,
            "invalid": 400,
            "not_found": 404,
            "failed": 500,
        }[result.status]
        return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))

    @app.post("/api/daily-update")
    async def daily_update(authorization: Optional[str] = Header(default=None)):
        """Recalculate age-decayed scores for every product"""
        if config.cron_secret and authorization != f"Bearer {config.cron_secret}":
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})

        logger.info("Daily score recalculation triggered via API")
        try:
            report = await run_in_threadpool(recalculation.run)
            return {
                "success": True,
                "message": (
                    f"Daily update complete: {report.updated} products updated, "
                    f"{len(report.errors)} errors"
                ),
                **report.model_dump(mode="json")
            }
        except Exception as e:
            logger.error(f"Error in daily update: {e}")
            return _error(500, str(e))

    @app.post("/api/match-duplicates")
    async def match_duplicates():
        """Run the automated duplicate-matching pass"""
        try:
            report = await run_in_threadpool(merge_engine.run_match_pass)
            for failure in report.failures:
                if failure.requires_attention:
                    await notifier.send_merge_failure(failure)
            return {"success": True, **report.model_dump(mode="json")}
        except Exception as e:
            logger.error(f"Error running match pass: {e}")
            return _error(500, str(e))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
