"""
CardTrader Blueprint Service

Syncs the CardTrader blueprint export into the ctraderData collection and
looks blueprints up by Cardmarket product id to enrich catalogue records.
"""

import logging
import re
import time
from typing import Any, Callable, Dict, Iterable, List, Optional
import requests
from pymongo import UpdateOne
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from ..config import (
    BULK_WRITE_BATCH_SIZE,
    CTRADER_API_URL,
    CTRADER_AUTH_TOKEN,
    CTRADER_CARD_URL,
    CTRADER_IMAGE_BASE_URL,
    CTRADER_REQUEST_DELAY_SECONDS,
    FEED_TIMEOUT_SECONDS,
    require_setting,
)
from ..exceptions import FetchError, PersistenceError
from ..models import Blueprint
from ..utils import chunked

logger = logging.getLogger(__name__)

# /uploads/blueprints/image/123456/show_monkey-d-luffy-op01-003.jpg
BLUEPRINT_IMAGE_PATTERN = re.compile(
    r'/blueprints/image/\d+/(?:[a-z]+_)?([\w-]+?)\.(?:jpe?g|png|webp)$', re.IGNORECASE
)

ENRICHMENT_FIELDS = ('blueprintId', 'externalUrl', 'imageUrl', 'fixedProperties')


def normalize_blueprint(item: Dict[str, Any], expansion_id: int) -> Blueprint:
    """Keep the blueprint fields the catalogue needs."""
    image = item.get('image') or {}
    preview = image.get('preview') or {}
    return Blueprint(
        id=item['id'],
        name=item.get('name'),
        card_code=item.get('card_code'),
        game_id=item.get('game_id'),
        version=item.get('version'),
        expansion_id=expansion_id,
        card_market_ids=item.get('card_market_ids') or [],
        fixed_properties=item.get('fixed_properties'),
        big_image=image.get('url'),
        small_image=preview.get('url'),
        tcg_player_id=item.get('tcg_player_id'),
    )


def fetch_expansion_blueprints(expansion_id: int, token: str, api_url: str = CTRADER_API_URL) -> List[Blueprint]:
    """
    Download the blueprint export for one expansion.

    Raises:
        FetchError: On network failure, non-success status or malformed body
    """
    try:
        response = requests.get(
            api_url,
            params={'expansion_id': expansion_id},
            headers={'Authorization': f'Bearer {token}'},
            timeout=FEED_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        raise FetchError(f"Request failed for expansion {expansion_id}: {e}", url=api_url) from e

    if not response.ok:
        raise FetchError(f"HTTP error! status: {response.status_code}", url=api_url,
                         status_code=response.status_code)

    try:
        data = response.json()
    except ValueError as e:
        raise FetchError(f"Invalid JSON for expansion {expansion_id}", url=api_url) from e

    if not isinstance(data, list):
        raise FetchError(f"Unexpected body for expansion {expansion_id}", url=api_url)

    try:
        return [normalize_blueprint(item, expansion_id) for item in data]
    except (KeyError, TypeError, ValueError) as e:
        raise FetchError(f"Malformed blueprint for expansion {expansion_id}: {e}", url=api_url) from e


def sync_blueprints(expansions_collection: Collection, blueprints_collection: Collection,
                    token: Optional[str] = None, api_url: str = CTRADER_API_URL,
                    delay: float = CTRADER_REQUEST_DELAY_SECONDS,
                    sleep: Callable[[float], Any] = time.sleep) -> int:
    """
    Fetch blueprints for every stored expansion and upsert them by id.

    A failed expansion is logged and skipped.

    Returns:
        int: Number of blueprints saved
    """
    token = require_setting('CTRADER_AUTH_TOKEN', token or CTRADER_AUTH_TOKEN)

    expansions = list(expansions_collection.find())
    if not expansions:
        logger.info("No expansions found in the database.")
        return 0

    blueprints: List[Blueprint] = []
    for i, expansion in enumerate(expansions):
        expansion_id = expansion.get('id')
        logger.info(f"[{i + 1}/{len(expansions)}] Fetching data for expansion_id {expansion_id} "
                    f"({expansion.get('name')})...")
        try:
            fetched = fetch_expansion_blueprints(expansion_id, token, api_url)
            blueprints.extend(fetched)
            logger.info(f"✓ Success for expansion_id {expansion_id} - {len(fetched)} blueprints")
        except FetchError as e:
            logger.error(f"✗ Error for expansion_id {expansion_id}: {e}")

        # Rate limiting: stay under the CardTrader quota
        if i < len(expansions) - 1:
            sleep(delay)

    if not blueprints:
        logger.warning("No blueprints to save")
        return 0

    logger.info(f"Saving {len(blueprints)} blueprints to MongoDB...")
    operations = [
        UpdateOne({'id': blueprint.id}, {'$set': blueprint.model_dump()}, upsert=True)
        for blueprint in blueprints
    ]
    try:
        for batch in chunked(operations, BULK_WRITE_BATCH_SIZE):
            blueprints_collection.bulk_write(batch, ordered=False)
    except PyMongoError as e:
        raise PersistenceError(f"Blueprint bulk write failed: {e}") from e

    logger.info(f"✅ Successfully saved/updated {len(blueprints)} blueprints")
    return len(blueprints)


def build_blueprint_index(collection: Collection, product_ids: Iterable[int],
                          batch_size: int = BULK_WRITE_BATCH_SIZE) -> Dict[int, Dict[str, Any]]:
    """
    Map Cardmarket product ids to their CardTrader blueprint.

    Lookup failures leave the index empty rather than aborting the run.
    """
    index: Dict[int, Dict[str, Any]] = {}
    ids = list(product_ids)
    try:
        for batch in chunked(ids, batch_size):
            for blueprint in collection.find({'card_market_ids': {'$in': batch}}):
                for id_product in blueprint.get('card_market_ids') or []:
                    index.setdefault(id_product, blueprint)
    except PyMongoError as e:
        logger.warning(f"Blueprint lookup failed, products stay unenriched: {e}")
        return {}
    return index


def derive_external_url(image_path: Optional[str]) -> Optional[str]:
    """CardTrader card page URL derived from the blueprint image file name."""
    if not image_path:
        return None
    match = BLUEPRINT_IMAGE_PATTERN.search(image_path)
    if not match:
        return None
    return CTRADER_CARD_URL.format(slug=match.group(1).lower())


def absolute_image_url(image_path: Optional[str]) -> Optional[str]:
    if not image_path:
        return None
    if image_path.startswith('http'):
        return image_path
    return f"{CTRADER_IMAGE_BASE_URL}{image_path}"


def enrichment_fields(blueprint: Dict[str, Any]) -> Dict[str, Any]:
    """Cross-reference fields attached to a product from its blueprint."""
    image_path = blueprint.get('big_image') or blueprint.get('small_image')
    fields = {
        'blueprintId': blueprint.get('id'),
        'externalUrl': derive_external_url(image_path),
        'imageUrl': absolute_image_url(image_path),
        'fixedProperties': blueprint.get('fixed_properties'),
    }
    return {key: value for key, value in fields.items() if value is not None}
