from argparse import Namespace

import pytest

import recommend
from data.classifier import default_registry
from errors import ValidationError


class CollectionService:
    """cmd_show が使う範囲だけを持つサービス"""

    def __init__(self):
        self.registry = default_registry()
        self.durations = []

    def get_collection(self, collection_id):
        return self.registry.get(collection_id)

    def list_collection_bonds(self, collection_id, duration, limit):
        self.durations.append(duration)
        return []


@pytest.mark.parametrize("duration,label", [("3Y", "3年以内"), ("1y", "1年以内"), ("5", "5年以内")])
def test_show_accepts_duration_codes(capsys, duration, label):
    service = CollectionService()
    recommend.cmd_show(service, Namespace(collection="ofz", duration=duration, limit=25))

    out = capsys.readouterr().out
    assert label in out
    assert "該当する銘柄がありません" in out
    assert service.durations == [duration]


def test_show_rejects_unknown_duration():
    with pytest.raises(ValidationError):
        recommend.cmd_show(CollectionService(), Namespace(collection="ofz", duration="9y", limit=25))
