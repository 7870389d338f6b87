# -*- coding: utf-8 -*-
"""
Mock Data Service
Generates, stores, caches, exports and imports mock data sets
"""

import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from jsonschema import ValidationError as SchemaValidationError
from jsonschema import validate as validate_schema

from data_cache import DataCache
from data_codecs import coerce_format, export_payload, import_payload
from data_templates import DataTemplate, GeneratorConfig, TemplateRegistry, default_template_registry
from engine_errors import NotFoundError, ValidationError
from mock_data_models import (
    DataGenerationOptions,
    MockDataMetadata,
    MockDataSet,
    MockDataType,
    coerce_data_type,
)
from settings import settings

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"name", "description", "category", "data", "expires_at", "schema", "tags"}


class MockDataService:
    """
    Mock data store with a bounded read-through cache.

    The template registry is injected so separate instances (for example in
    tests) never share templates.
    """

    def __init__(
        self,
        registry: Optional[TemplateRegistry] = None,
        cache: Optional[DataCache] = None,
        default_ttl_seconds: Optional[float] = settings.mock_data_ttl_seconds,
    ):
        self.registry = registry if registry is not None else default_template_registry()
        self.cache = cache if cache is not None else DataCache(
            max_size=settings.mock_cache_max_bytes,
            max_age=settings.mock_cache_max_age_seconds,
        )
        self.default_ttl_seconds = default_ttl_seconds
        self._store: Dict[str, MockDataSet] = {}
        self._update_seq: Dict[str, int] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.RLock()

    # ========================================================================
    # CRUD
    # ========================================================================

    def _resolve_expiry(self, expires_at: Optional[datetime], ttl_seconds: Optional[float]) -> Optional[datetime]:
        if expires_at is not None:
            return expires_at
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        if ttl is None:
            return None
        return datetime.now(timezone.utc) + timedelta(seconds=ttl)

    def _save(self, data_set: MockDataSet):
        with self._lock:
            self._store[data_set.id] = data_set
            self._update_seq[data_set.id] = next(self._sequence)
        self.cache.put(data_set.id, data_set, data_set.size)

    async def create_data_set(
        self,
        name: str,
        data_type,
        data: Any,
        description: Optional[str] = None,
        category: str = "default",
        schema: Optional[Dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        source: str = "generated",
        generated_by: str = "MockDataService",
        validate: bool = False,
    ) -> MockDataSet:
        data_type = coerce_data_type(data_type)

        if validate and schema is not None:
            self._validate_against(data, schema)

        data_set = MockDataSet(
            name=name,
            type=data_type,
            data=data,
            description=description if description is not None else f"Generated {data_type.value} data",
            category=category,
            schema=schema,
            expires_at=self._resolve_expiry(expires_at, ttl_seconds),
            metadata=MockDataMetadata(generated_by=generated_by, source=source, tags=list(tags or [])),
        )
        self._save(data_set)
        logger.info(f"Created mock data set {data_set.id} ({data_type.value}, {data_set.size} bytes)")
        return data_set

    async def get_data_set(self, data_set_id: str) -> Optional[MockDataSet]:
        """
        Cache-first lookup. Expired records are deleted on discovery and
        reported as absent; every successful read bumps the usage counter.
        """
        data_set = self.cache.get(data_set_id)
        from_cache = data_set is not None

        if data_set is None:
            with self._lock:
                data_set = self._store.get(data_set_id)
            if data_set is None:
                return None

        if data_set.is_expired():
            logger.warning(f"Mock data set {data_set_id} expired, removing")
            await self.delete_data_set(data_set_id)
            return None

        with self._lock:
            data_set.increment_usage()
        if from_cache:
            self.cache.touch(data_set_id)
        else:
            self.cache.put(data_set_id, data_set, data_set.size)
        return data_set

    async def list_data_sets(
        self,
        data_type=None,
        category: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        expired: Optional[bool] = None,
    ) -> List[MockDataSet]:
        """Filtered data sets, most recently updated first. Reads do not count as usage."""
        wanted_type = coerce_data_type(data_type) if data_type is not None else None
        wanted_tags = set(tags or [])

        with self._lock:
            candidates = [(self._update_seq[ds.id], ds) for ds in self._store.values()]

        results = []
        for seq, data_set in candidates:
            if wanted_type is not None and data_set.type != wanted_type:
                continue
            if category is not None and data_set.category != category:
                continue
            if wanted_tags and not wanted_tags.intersection(data_set.metadata.tags):
                continue
            if expired is not None and data_set.is_expired() != expired:
                continue
            results.append((seq, data_set))

        results.sort(key=lambda pair: pair[0], reverse=True)
        return [data_set for _, data_set in results]

    async def update_data_set(self, data_set_id: str, **updates) -> Optional[MockDataSet]:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError("unknown_update_fields", f"Cannot update fields: {', '.join(sorted(unknown))}")

        with self._lock:
            data_set = self._store.get(data_set_id)
            if data_set is None:
                return None

            if "name" in updates:
                if not updates["name"]:
                    raise ValidationError("data_set_name_required", "Mock data set name is required")
                data_set.name = updates["name"]
            if "description" in updates:
                data_set.description = updates["description"]
            if "category" in updates:
                data_set.category = updates["category"]
            if "expires_at" in updates:
                data_set.expires_at = updates["expires_at"]
            if "tags" in updates:
                data_set.metadata.tags = list(updates["tags"])
            if "schema" in updates:
                data_set.schema = updates["schema"]
                data_set.schema_inferred = updates["schema"] is None
            if "data" in updates or "schema" in updates:
                data_set.update_data(updates.get("data", data_set.data))
            else:
                data_set.updated_at = datetime.now(timezone.utc)
            self._update_seq[data_set_id] = next(self._sequence)

        self.cache.invalidate(data_set_id)
        logger.info(f"Updated mock data set {data_set_id}")
        return data_set

    async def delete_data_set(self, data_set_id: str) -> bool:
        with self._lock:
            removed = self._store.pop(data_set_id, None)
            self._update_seq.pop(data_set_id, None)
        self.cache.invalidate(data_set_id)
        if removed is not None:
            logger.info(f"Deleted mock data set {data_set_id}")
        return removed is not None

    async def verify_integrity(self, data_set_id: str) -> bool:
        with self._lock:
            data_set = self._store.get(data_set_id)
        if data_set is None:
            raise NotFoundError("Mock data set", [data_set_id])
        return data_set.verify_checksum()

    # ========================================================================
    # GENERATION
    # ========================================================================

    def register_template(self, template: DataTemplate) -> DataTemplate:
        return self.registry.register(template)

    def get_template(self, template_id: str) -> Optional[DataTemplate]:
        return self.registry.get(template_id)

    def list_templates(self, data_type=None) -> List[DataTemplate]:
        return self.registry.list(data_type)

    def _select_template(self, options: DataGenerationOptions) -> DataTemplate:
        if options.template_id:
            template = self.registry.get(options.template_id)
            if template is None:
                raise NotFoundError("Template", [options.template_id])
            return template

        template = self.registry.find(options.type, options.category)
        if template is None:
            raise NotFoundError(
                "Template", [options.type.value],
                message=f"No template found for type {options.type.value}"
            )
        return template

    @staticmethod
    def _validate_against(data: Any, schema: Dict[str, Any]):
        try:
            validate_schema(instance=data, schema=schema)
        except SchemaValidationError as e:
            raise ValidationError("schema_mismatch", f"Payload does not match schema: {e.message}")

    async def generate_data(self, options: DataGenerationOptions) -> MockDataSet:
        template = self._select_template(options)

        items = []
        for index in range(options.count):
            config = GeneratorConfig(
                seed=options.seed,
                locale=options.locale,
                custom_fields=dict(options.custom_fields),
                index=index,
            )
            item = await template.generator(config)
            if isinstance(item, dict) and options.custom_fields:
                item = {**item, **options.custom_fields}
            self._validate_against(item, template.schema)
            items.append(item)

        if options.count == 1:
            data = items[0]
            schema = template.schema
        else:
            data = items
            schema = {
                "type": "array",
                "items": template.schema,
                "minItems": options.count,
                "maxItems": options.count,
            }

        tags = ["generated", f"type:{template.type.value}"]
        if options.count > 1:
            tags.append(f"count:{options.count}")

        data_set = await self.create_data_set(
            name=options.name or f"Generated {template.name}",
            data_type=template.type,
            data=data,
            description=f"Generated {template.type.value} data from {template.id}",
            category=template.category,
            schema=schema,
            expires_at=options.expires_at,
            tags=tags,
            generated_by=template.id,
        )
        logger.info(f"Generated {options.count} item(s) from template {template.id}")
        return data_set

    async def generate_from_template(self, template_id: str, **options) -> MockDataSet:
        template = self.registry.get(template_id)
        if template is None:
            raise NotFoundError("Template", [template_id])
        return await self.generate_data(
            DataGenerationOptions(type=template.type, template_id=template_id, **options)
        )

    # ========================================================================
    # IMPORT / EXPORT
    # ========================================================================

    async def export_data_set(self, data_set_id: str, fmt="json", include_metadata: bool = False) -> str:
        fmt = coerce_format(fmt)
        data_set = await self.get_data_set(data_set_id)
        if data_set is None:
            raise NotFoundError("Mock data set", [data_set_id])
        envelope = data_set.to_dict() if include_metadata else None
        return export_payload(data_set.data, fmt, envelope=envelope)

    async def import_data_set(
        self,
        text: str,
        fmt="json",
        name: Optional[str] = None,
        data_type=None,
        category: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> MockDataSet:
        imported = import_payload(text, fmt)
        envelope = imported.envelope or {}

        import_tags = ["imported"]
        for tag in list(tags or []) + list((envelope.get("metadata") or {}).get("tags", [])):
            if tag not in import_tags:
                import_tags.append(tag)

        return await self.create_data_set(
            name=name or envelope.get("name") or "Imported data",
            data_type=data_type or envelope.get("type") or MockDataType.OTHER,
            data=imported.data,
            description=description or envelope.get("description") or "Imported data",
            category=category or envelope.get("category") or "default",
            tags=import_tags,
            source="imported",
            generated_by="import",
        )

    # ========================================================================
    # MAINTENANCE
    # ========================================================================

    def clear_cache(self):
        self.cache.clear()
        logger.info("Mock data cache cleared")

    async def cleanup_expired(self) -> int:
        now = datetime.now(timezone.utc)
        with self._lock:
            expired_ids = [ds.id for ds in self._store.values() if ds.is_expired(now)]
        for data_set_id in expired_ids:
            await self.delete_data_set(data_set_id)
        if expired_ids:
            logger.info(f"Removed {len(expired_ids)} expired mock data set(s)")
        return len(expired_ids)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
