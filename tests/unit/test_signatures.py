"""Unit tests for the change-signature store."""

from mail_archiver.index import ArchiveIndexRepository, ChangeSignatureStore
from mail_archiver.models import ChangeSignature


class TestChangeSignatureStore:
    """Test suite for ChangeSignatureStore."""

    def test_put_get_and_children(self, repository: ArchiveIndexRepository) -> None:
        """Test storing file and directory signatures."""
        store = ChangeSignatureStore(repository)
        store.put_many(
            [
                ChangeSignature(unit_key="/a/cur", size=0, modification_time_ns=1, parent_key="/a", is_directory=True),
                ChangeSignature(unit_key="/a/cur/1.eml", size=10, modification_time_ns=2, parent_key="/a/cur"),
                ChangeSignature(unit_key="/a/cur/2.eml", size=20, modification_time_ns=3, parent_key="/a/cur"),
            ]
        )

        assert store.get("/a/cur").is_directory is True
        children = store.children("/a/cur")
        assert set(children) == {"/a/cur/1.eml", "/a/cur/2.eml"}
        assert children["/a/cur/2.eml"].size == 20
        assert store.get("/missing") is None

    def test_put_replaces_existing_signature(self, repository: ArchiveIndexRepository) -> None:
        """Test that a unit has a single, latest signature."""
        store = ChangeSignatureStore(repository)
        store.put(ChangeSignature(unit_key="/x.eml", size=1, modification_time_ns=1))
        store.put(ChangeSignature(unit_key="/x.eml", size=2, modification_time_ns=5, content_digest="d"))

        signature = store.get("/x.eml")
        assert signature.size == 2
        assert signature.content_digest == "d"

        store.clear()
        assert store.get("/x.eml") is None
