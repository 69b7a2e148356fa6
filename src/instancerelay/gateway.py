"""Instance Relay API - HTTP front for the instance cache.

Design:
- Client scripts POST sightings to /api/report
- Joiners read /api/instances and /api/best
- All state lives in one InstanceCache; a background sweeper purges expired entries
- Optional JSONL event log for every report
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .cache import InstanceCache, Item, ValidationError
from .config import load_config
from .sweeper import ExpirySweeper

# ============================================================================
# DATA MODELS
# ============================================================================


class AnimalData(BaseModel):
    """Item payload sent by the client script."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", allow_inf_nan=False)

    display_name: Optional[str] = Field(default=None, alias="displayName")
    value: Optional[Union[int, float]] = None
    generation: Any = None
    rarity: Any = None


class ReportRequest(BaseModel):
    """Sighting of a valuable item in a game instance.

    入力：
        - placeId：ゲーム ID（必須）
        - gameInstanceId：サーバーインスタンス ID（必須）
        - animalData：displayName / value / generation / rarity（必須）
        - timestamp：クライアント側の UNIX 秒（任意）
        - source：送信元タグ（任意）

    Required fields are optional at schema level so that a missing field
    yields the relay's own 400 body rather than a 422.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", allow_inf_nan=False)

    place_id: Optional[Union[str, int]] = Field(default=None, alias="placeId")
    game_instance_id: Optional[Union[str, int]] = Field(default=None, alias="gameInstanceId")
    animal_data: Optional[AnimalData] = Field(default=None, alias="animalData")
    timestamp: Optional[Union[int, float]] = None
    source: Optional[str] = None

    def to_item(self) -> Optional[Item]:
        if self.animal_data is None:
            return None
        return Item(
            display_name=self.animal_data.display_name,
            value=self.animal_data.value,
            generation=self.animal_data.generation,
            rarity=self.animal_data.rarity,
        )


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)

INTERNAL_ERROR_BODY = {"success": False, "error": "Internal server error"}


def _write_jsonl_log(log_entry: dict, log_path: Path) -> None:
    """Append JSON log entry to JSONL file.

    入力：log_entry dict, log_path
    出力：ファイル追記
    副作用：ディスク I/O
    失敗モード：ファイル書き込み失敗時は例外発生
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "a") as f:
        f.write(json.dumps(log_entry, default=str) + "\n")


def _log_report_event(config: Dict[str, Any], request: ReportRequest, key: Optional[str], stored: bool) -> None:
    if not config.get("log_dir"):
        return
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "instance_id": key,
        "place_id": request.place_id,
        "game_instance_id": request.game_instance_id,
        "value": request.animal_data.value if request.animal_data else None,
        "stored": stored,
        "source": request.source or "unknown",
    }
    log_path = Path(config["log_dir"]) / "relay.jsonl"
    try:
        _write_jsonl_log(log_entry, log_path)
    except Exception as e:
        logger.error(f"Failed to write log: {e}")


def _parse_positive_int(raw: Optional[str], default: int) -> int:
    """Lenient query-string integer: junk, zero and negatives fall back to default."""
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        try:
            value = int(float(raw))
        except (ValueError, OverflowError):
            return default
    return value if value > 0 else default


# ============================================================================
# FASTAPI APP
# ============================================================================


def create_app(config: Optional[Dict[str, Any]] = None, cache: Optional[InstanceCache] = None) -> FastAPI:
    """Build the relay application.

    Args:
        config: Settings dict (defaults to load_config())
        cache: Pre-built cache (tests inject one with a fake clock)

    Returns:
        FastAPI app with cache and sweeper attached to app.state
    """
    config = config if config is not None else load_config()
    cache = cache or InstanceCache(
        max_entries=config["max_entries"],
        ttl_seconds=config["ttl_seconds"],
        min_value=config["min_value"],
    )
    sweeper = ExpirySweeper(cache, interval_seconds=config["sweep_interval_seconds"])

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()

    app = FastAPI(title="Instance Relay", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.cache = cache
    app.state.sweeper = sweeper

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get("cors_origins") or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def bad_request(_: Request, exc: RequestValidationError):
        logger.warning(f"Rejected malformed request: {exc.errors()}")
        return JSONResponse(status_code=400, content={"success": False, "error": "Missing required fields"})

    @app.post("/api/report")
    async def report(body: ReportRequest):
        """Store a sighting if it clears the value threshold.

        入力：ReportRequest
        出力：{success, message, instanceId?}
        副作用：キャッシュ更新、JSONL ログ追記（log_dir 設定時）
        失敗モード：必須項目欠落は 400、内部エラーは 500
        """
        try:
            result = cache.report(
                body.place_id,
                body.game_instance_id,
                body.to_item(),
                reported_at=body.timestamp,
                source=body.source,
            )
        except ValidationError as e:
            return JSONResponse(status_code=400, content={"success": False, "error": str(e)})
        except Exception as e:
            logger.error(f"Error processing report: {e}", exc_info=True)
            return JSONResponse(status_code=500, content=INTERNAL_ERROR_BODY)

        _log_report_event(config, body, result.key, result.stored)

        if not result.stored:
            return {"success": True, "message": "Value too low, not stored"}
        return {"success": True, "message": "Instance stored successfully", "instanceId": result.key}

    @app.get("/api/instances")
    async def list_instances(minValue: Optional[str] = None, limit: Optional[str] = None):
        """List live instances, most valuable first."""
        min_value = _parse_positive_int(minValue, cache.min_value)
        page = min(_parse_positive_int(limit, config["default_limit"]), config["max_limit"])
        try:
            instances = cache.query(min_value=min_value, limit=page)
        except Exception as e:
            logger.error(f"Error fetching instances: {e}", exc_info=True)
            return JSONResponse(status_code=500, content=INTERNAL_ERROR_BODY)
        return {"success": True, "count": len(instances), "instances": instances}

    @app.get("/api/best")
    async def best_instance():
        try:
            instance = cache.best()
        except Exception as e:
            logger.error(f"Error fetching best instance: {e}", exc_info=True)
            return JSONResponse(status_code=500, content=INTERNAL_ERROR_BODY)
        if instance is None:
            return {"success": True, "instance": None, "message": "No instances available"}
        return {"success": True, "instance": instance}

    @app.get("/api/health")
    async def health():
        """Health check endpoint.

        入力：なし
        出力：{"status": "ok", "instances": N, "uptime": 秒}
        副作用：なし
        失敗モード：なし
        """
        stats = cache.health()
        return {"status": "ok", "instances": stats["entry_count"], "uptime": stats["uptime_seconds"]}

    @app.delete("/api/instance/{game_instance_id}")
    async def delete_instance(game_instance_id: str):
        try:
            deleted = cache.delete_by_instance_id(game_instance_id)
        except Exception as e:
            logger.error(f"Error deleting instance: {e}", exc_info=True)
            return JSONResponse(status_code=500, content=INTERNAL_ERROR_BODY)
        return {"success": True, "deleted": deleted}

    return app


# Load configuration
CONFIG = load_config()

# Setup logging
logging.basicConfig(level=getattr(logging, str(CONFIG.get("log_level", "INFO")).upper(), logging.INFO))

app = create_app(CONFIG)


def main() -> None:
    """Run the relay with uvicorn on the configured host/port."""
    import uvicorn

    logger.info(f"Server running on port {CONFIG['port']}")
    uvicorn.run(app, host=CONFIG["host"], port=int(CONFIG["port"]))


if __name__ == "__main__":
    main()
