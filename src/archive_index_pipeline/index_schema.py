from __future__ import annotations

from dataclasses import dataclass
from typing import Any

GERMAN_STOP_WORDS = tuple(
    """
    aber alle allem allen aller allerdings alles also am an ander andere anderem
    anderen anderer anderes anderm andern anderr anders auch auf aus bei beim
    bin bis bist da damit dann das dass dasselbe dazu dein deine deinem deinen
    deiner dem den denn der des desselben dessen die dies diese dieselbe
    dieselben diesem diesen dieser dieses doch dort du durch ein eine einem
    einen einer einige einigem einigen einiger einiges einmal er es etwas euch
    euer eure eurem euren eurer für gegen gewesen hab habe haben hat hatte
    hätte hier hin hinter ich ihm ihn ihnen ihr ihre ihrem ihren ihrer im in
    indem ins ist jede jedem jeden jeder jedes jedoch jenem jenen jener jenes
    jetzt kann kein keine keinem keinen keiner könnte machen man manche manchem
    manchen mancher manches mein meine meinem meinen meiner mit muss musste
    nach nicht nichts noch nun nur ob oder ohne sehr sein seine seinem seinen
    seiner seit sich sie sind so solche solchem solchen solcher soll sollte
    sondern sonst über um und uns unser unsere unserem unseren unserer unter
    viel vom von vor während war warum was weil welch welche welchem welchen
    welcher wenn wer werde werden wie wieder will wir wird wirst wo wollen
    wollt würde würden zu zum zur zwar zwischen
    """.split()
)


@dataclass(frozen=True)
class IndexSchema:
    entity: str
    searchable: tuple[str, ...]
    filterable: tuple[str, ...]
    sortable: tuple[str, ...]
    stop_words: tuple[str, ...] = GERMAN_STOP_WORDS
    min_word_size_one_typo: int = 4
    min_word_size_two_typos: int = 8
    max_values_per_facet: int = 100
    max_total_hits: int = 100_000

    def to_settings(self) -> dict[str, Any]:
        return {
            "searchableAttributes": list(self.searchable),
            "filterableAttributes": list(self.filterable),
            "sortableAttributes": list(self.sortable),
            "stopWords": list(self.stop_words),
            "typoTolerance": {
                "enabled": True,
                "minWordSizeForTypos": {
                    "oneTypo": self.min_word_size_one_typo,
                    "twoTypos": self.min_word_size_two_typos,
                },
            },
            "faceting": {"maxValuesPerFacet": self.max_values_per_facet},
            "pagination": {"maxTotalHits": self.max_total_hits},
        }


FILE_SCHEMA = IndexSchema(
    entity="ArchiveFile",
    searchable=("title", "summary", "call_number", "parent_names", "origin_names"),
    filterable=(
        "archive_node_id",
        "ancestor_ids",
        "fonds_id",
        "fonds_name",
        "fonds_unitid",
        "fonds_unitid_prefix",
        "decade",
        "period",
        "depth",
        "origin_ids",
        "origin_names",
        "source_date_start_unix",
        "source_date_end_unix",
    ),
    sortable=("call_number", "source_date_start_unix"),
)

NODE_SCHEMA = IndexSchema(
    entity="ArchiveNode",
    searchable=("name", "unitid", "scopecontent"),
    filterable=("level", "first_letter", "parent_node_id", "ancestor_ids", "fonds_unitid_prefix", "depth"),
    sortable=("name", "unitid"),
)

ORIGIN_SCHEMA = IndexSchema(
    entity="Origin",
    searchable=("name",),
    filterable=("first_letter", "label"),
    sortable=("name",),
)

SCHEMAS = (FILE_SCHEMA, NODE_SCHEMA, ORIGIN_SCHEMA)

SHADOW_SUFFIX = "new"


@dataclass(frozen=True)
class IndexNames:
    """Per-environment index uids; a suffix selects a shadow generation."""

    env: str
    suffix: str | None = None

    def _name(self, entity: str) -> str:
        base = f"{entity}_{self.env}"
        return f"{base}_{self.suffix}" if self.suffix else base

    @property
    def file_index(self) -> str:
        return self._name(FILE_SCHEMA.entity)

    @property
    def node_index(self) -> str:
        return self._name(NODE_SCHEMA.entity)

    @property
    def origin_index(self) -> str:
        return self._name(ORIGIN_SCHEMA.entity)

    def all(self) -> tuple[str, str, str]:
        return (self.file_index, self.node_index, self.origin_index)

    def with_schemas(self) -> list[tuple[str, IndexSchema]]:
        return [
            (self.file_index, FILE_SCHEMA),
            (self.node_index, NODE_SCHEMA),
            (self.origin_index, ORIGIN_SCHEMA),
        ]

    def shadow(self) -> IndexNames:
        return IndexNames(env=self.env, suffix=SHADOW_SUFFIX)
