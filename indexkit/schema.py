"""
Expected schema of the documentation search index.

The definition is what IndexSynchronizer converges the remote index to.
Field attributes use the search REST API names so a definition can be
sent as-is.
"""

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class FieldType(str, Enum):
    STRING = "Edm.String"
    STRING_COLLECTION = "Collection(Edm.String)"
    INT32 = "Edm.Int32"
    INT64 = "Edm.Int64"
    DOUBLE = "Edm.Double"
    BOOLEAN = "Edm.Boolean"
    DATETIME = "Edm.DateTimeOffset"


# Attributes compared when deciding whether a remote field diverges
COMPARED_ATTRIBUTES = (
    "type", "key", "searchable", "filterable",
    "sortable", "facetable", "retrievable", "analyzer",
)


class IndexField(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    name: str
    type: FieldType = FieldType.STRING
    key: bool = False
    searchable: bool = False
    filterable: bool = False
    sortable: bool = False
    facetable: bool = False
    retrievable: bool = True
    analyzer: Optional[str] = None

    def differences(self, remote: Mapping[str, Any]) -> List[str]:
        """Describe each compared attribute that differs on the remote field."""
        expected = self.model_dump(mode="json")
        diffs = []
        for attribute in COMPARED_ATTRIBUTES:
            want = expected[attribute]
            have = remote.get(attribute)
            # The backend reports unset booleans as false
            if isinstance(want, bool) and have is None:
                have = False
            if want != have:
                diffs.append(f"{self.name}.{attribute}: expected {want!r}, found {have!r}")
        return diffs


class IndexDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    fields: List[IndexField] = Field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize for a create-or-update request."""
        return {
            "name": self.name,
            "fields": [f.model_dump(mode="json", exclude_none=True) for f in self.fields],
        }

    def differences(self, remote: Mapping[str, Any]) -> List[str]:
        """
        Compare against a remote index definition.

        Returns an empty list when the remote index matches. Fields present
        remotely but not expected are ignored: the backend cannot drop
        fields, so treating them as drift would never converge.
        """
        remote_fields = {
            f.get("name"): f for f in remote.get("fields") or [] if isinstance(f, Mapping)
        }
        diffs = []
        for expected in self.fields:
            found = remote_fields.get(expected.name)
            if found is None:
                diffs.append(f"{expected.name}: missing")
                continue
            diffs.extend(expected.differences(found))
        return diffs


def documentation_index(name: str = "documents") -> IndexDefinition:
    """The documentation index: one document per page of a project branch."""
    return IndexDefinition(
        name=name,
        fields=[
            IndexField(name="id", key=True, filterable=True),
            IndexField(name="projectId", filterable=True, facetable=True),
            IndexField(name="branchName", filterable=True, facetable=True),
            IndexField(name="url", filterable=True),
            IndexField(
                name="title", searchable=True, sortable=True,
                analyzer="standard.lucene",
            ),
            IndexField(name="content", searchable=True, analyzer="standard.lucene"),
            IndexField(
                name="tags", type=FieldType.STRING_COLLECTION,
                searchable=True, filterable=True, facetable=True,
            ),
        ],
    )
