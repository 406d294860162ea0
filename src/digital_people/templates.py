from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from digital_people.config import Settings
from digital_people.errors import TemplateNotFound
from digital_people.utils.files import copy_file, sanitize_filename
from digital_people.utils.log import logger


class TemplateKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"

    @property
    def ext(self) -> str:
        return ".wav" if self is TemplateKind.AUDIO else ".mp4"


@dataclass(frozen=True, slots=True)
class TemplateItem:
    name: str
    updated_at: int = 0

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "TemplateItem":
        # older index entries used Go-style capitalised keys
        name = d.get("name", d.get("Name"))
        updated = d.get("updated_at", d.get("UpdatedAt"))
        return cls(name=str(name or ""), updated_at=int(updated or 0))


class TemplateCatalog:
    """
    Read-only lookup of named reference audio/video templates.

    The index lives in Redis (`<prefix>:templates:<kind>`, a JSON list). With
    no Redis client, the template directory itself is the index.
    """

    def __init__(self, settings: Settings, *, redis_client: Any = None) -> None:
        self._s = settings
        self._r = redis_client
        self._prefix = str(settings.queue_prefix or "").strip() or "digital_people"

    def index_key(self, kind: TemplateKind) -> str:
        return f"{self._prefix}:templates:{kind.value}"

    def kind_dir(self, kind: TemplateKind) -> Path:
        return self._s.audio_templates if kind is TemplateKind.AUDIO else self._s.video_templates

    def legacy_dir(self, kind: TemplateKind) -> Path:
        return self._s.workdir / "templates" / kind.value

    def path_for(self, kind: TemplateKind, name: str) -> Path:
        cleaned = str(name or "").strip()
        if not cleaned:
            raise TemplateNotFound("template name is empty")
        if sanitize_filename(cleaned) != cleaned:
            raise TemplateNotFound(f"template name contains illegal characters: {name!r}")
        return self.kind_dir(kind) / f"{cleaned}{kind.ext}"

    def items(self, kind: TemplateKind) -> list[TemplateItem]:
        if self._r is None:
            d = self.kind_dir(kind)
            if not d.is_dir():
                return []
            return [
                TemplateItem(name=p.stem, updated_at=int(p.stat().st_mtime))
                for p in sorted(d.glob(f"*{kind.ext}"))
                if p.is_file()
            ]
        raw = self._r.get(self.index_key(kind))
        if not raw:
            return []
        data = json.loads(raw)
        return [TemplateItem.from_dict(x) for x in data if isinstance(x, dict)]

    def resolve(self, kind: TemplateKind | str, name: str) -> Path:
        """Return the on-disk path of a registered template, migrating legacy copies."""
        kind = TemplateKind(kind)
        items = self.items(kind)
        if not any(it.name == name for it in items):
            logger.info("template_not_indexed", kind=kind.value, name=name, items=len(items))
            raise TemplateNotFound(f"模板 {name} 未找到")
        path = self.path_for(kind, name)
        if path.is_file():
            return path
        legacy = self.legacy_dir(kind) / f"{name}{kind.ext}"
        if not legacy.is_file():
            logger.warning("template_file_missing", kind=kind.value, name=name, path=str(path), legacy=str(legacy))
            raise TemplateNotFound(f"模板 {name} 文件缺失")
        logger.info("template_migrate_legacy", kind=kind.value, src=str(legacy), dst=str(path))
        try:
            copy_file(legacy, path)
        except OSError as ex:
            raise TemplateNotFound(f"模版迁移失败: {ex}") from ex
        return path
