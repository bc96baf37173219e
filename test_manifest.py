from __future__ import annotations

import io
import os
import stat
import tarfile
import tempfile
import unittest
from pathlib import Path

from sitepkg.errors import EntryMissingError, SourceMissingError, UnsupportedEntryError
from sitepkg.manifest import (
    ByNameOwnership,
    Manifest,
    MissingPolicy,
    NumericOwnership,
    SkipOwnership,
    is_local,
    load,
)


def _create_sample_files(base: Path):
    (base / "etc").mkdir()
    (base / "etc" / "site.conf").write_text("listen 8080\n", encoding="utf-8")
    (base / "var").mkdir()
    (base / "var" / "data.bin").write_bytes(os.urandom(4096))
    (base / "var" / "empty").write_bytes(b"")


def _archive(root: Path, *paths: str, **kw) -> bytes:
    buf = io.BytesIO()
    Manifest(str(root), paths, **kw).create(buf)
    return buf.getvalue()


def _member_names(data: bytes):
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tf:
        return tf.getnames()


class ManifestTests(unittest.TestCase):
    def run_with_dirs(self):
        src = tempfile.TemporaryDirectory()
        dst = tempfile.TemporaryDirectory()
        self.addCleanup(src.cleanup)
        self.addCleanup(dst.cleanup)
        return Path(src.name), Path(dst.name)

    def test_add_dedups_and_keeps_order(self):
        m = Manifest("/srv", ["b", "a", "b", "c", "a"])
        self.assertEqual(list(m), ["b", "a", "c"])
        self.assertEqual(len(m), 3)
        self.assertTrue(m.has("a"))
        self.assertIn("c", m)
        self.assertFalse(m.has("d"))

    def test_resolve(self):
        m = Manifest("/srv/site")
        self.assertEqual(m.resolve("etc/site.conf"), "/srv/site/etc/site.conf")
        self.assertEqual(m.resolve("./etc//x/../site.conf"), "/srv/site/etc/site.conf")
        self.assertEqual(m.resolve("/abs/path"), "/abs/path")
        self.assertEqual(m.resolve("../escape"), "../escape")
        self.assertEqual(m.resolve(""), "")

    def test_is_local(self):
        self.assertTrue(is_local("a/b"))
        self.assertTrue(is_local("a/../b"))
        self.assertFalse(is_local(""))
        self.assertFalse(is_local("/a"))
        self.assertFalse(is_local(".."))
        self.assertFalse(is_local("a/../../b"))

    def test_roundtrip_one_file(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        data = _archive(src, "etc", "etc/site.conf")

        report = Manifest(str(dst), ["etc", "etc/site.conf"]).extract(io.BytesIO(data))
        self.assertEqual(report.extracted, ["etc", "etc/site.conf"])
        self.assertEqual(report.skipped, [])
        self.assertEqual(report.missing, [])
        self.assertEqual((dst / "etc" / "site.conf").read_text(encoding="utf-8"), "listen 8080\n")

    def test_roundtrip_binary_and_empty_files(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        paths = ["var", "var/data.bin", "var/empty"]
        data = _archive(src, *paths)

        Manifest(str(dst), paths).extract(io.BytesIO(data))
        self.assertEqual((dst / "var" / "data.bin").read_bytes(), (src / "var" / "data.bin").read_bytes())
        self.assertEqual((dst / "var" / "empty").read_bytes(), b"")

    def test_empty_directory(self):
        src, dst = self.run_with_dirs()
        (src / "spool").mkdir()
        data = _archive(src, "spool")
        Manifest(str(dst), ["spool"]).extract(io.BytesIO(data))
        self.assertTrue((dst / "spool").is_dir())
        self.assertEqual(list((dst / "spool").iterdir()), [])

    def test_directory_does_not_recurse(self):
        src, _ = self.run_with_dirs()
        _create_sample_files(src)
        data = _archive(src, "etc")
        self.assertEqual(_member_names(data), ["etc"])

    def test_directory_entry_with_trailing_slash(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        data = _archive(src, "etc/", "etc/site.conf")
        report = Manifest(str(dst), ["etc/", "etc/site.conf"]).extract(io.BytesIO(data))
        self.assertEqual(report.missing, [])
        self.assertTrue((dst / "etc" / "site.conf").is_file())

    def test_create_reports_written(self):
        src, _ = self.run_with_dirs()
        _create_sample_files(src)
        report = Manifest(str(src), ["etc", "etc/site.conf"]).create(io.BytesIO())
        self.assertEqual(report.written, ["etc", "etc/site.conf"])
        self.assertEqual(report.missing, [])

    def test_create_missing_source_fails(self):
        src, _ = self.run_with_dirs()
        _create_sample_files(src)
        m = Manifest(str(src), ["etc/site.conf", "etc/nope"])
        with self.assertRaises(SourceMissingError) as ctx:
            m.create(io.BytesIO())
        self.assertIn("etc/nope", str(ctx.exception))

    def test_create_missing_source_ignored(self):
        src, _ = self.run_with_dirs()
        _create_sample_files(src)
        buf = io.BytesIO()
        report = Manifest(str(src), ["etc/site.conf", "etc/nope"], ignore_missing=True).create(buf)
        self.assertEqual(report.written, ["etc/site.conf"])
        self.assertEqual(report.missing, ["etc/nope"])
        self.assertEqual(_member_names(buf.getvalue()), ["etc/site.conf"])

    def test_create_leaves_writer_open(self):
        src, _ = self.run_with_dirs()
        _create_sample_files(src)
        buf = io.BytesIO()
        Manifest(str(src), ["etc"]).create(buf)
        self.assertFalse(buf.closed)
        self.assertEqual(len(buf.getvalue()) % tarfile.RECORDSIZE, 0)

    def test_create_follows_symlinks(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        try:
            os.symlink("site.conf", src / "etc" / "link.conf")
        except (OSError, NotImplementedError):
            self.skipTest("symlinks not available")
        data = _archive(src, "etc/link.conf")
        (dst / "etc").mkdir()
        Manifest(str(dst), ["etc/link.conf"]).extract(io.BytesIO(data))
        self.assertFalse(os.path.islink(dst / "etc" / "link.conf"))
        self.assertEqual((dst / "etc" / "link.conf").read_text(encoding="utf-8"), "listen 8080\n")

    def test_create_rejects_fifo(self):
        if not hasattr(os, "mkfifo"):
            self.skipTest("mkfifo not available")
        src, _ = self.run_with_dirs()
        os.mkfifo(src / "pipe")
        with self.assertRaises(UnsupportedEntryError):
            Manifest(str(src), ["pipe"]).create(io.BytesIO())

    def test_extract_missing_entry_fails_after_stream(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        data = _archive(src, "etc", "etc/site.conf")
        m = Manifest(str(dst), ["etc", "etc/site.conf", "etc/other.conf"])
        with self.assertRaises(EntryMissingError) as ctx:
            m.extract(io.BytesIO(data))
        self.assertIn("etc/other.conf", str(ctx.exception))
        # everything present in the archive was still restored
        self.assertTrue((dst / "etc" / "site.conf").is_file())

    def test_extract_missing_entry_ignored(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        data = _archive(src, "etc", "etc/site.conf")
        m = Manifest(str(dst), ["etc", "etc/site.conf", "etc/other.conf"], ignore_missing=True)
        report = m.extract(io.BytesIO(data))
        self.assertEqual(report.extracted, ["etc", "etc/site.conf"])
        self.assertEqual(report.missing, ["etc/other.conf"])

    def test_policy_outcomes_are_independent(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        policy = MissingPolicy(ignore_missing_sources=True, ignore_missing_entries=False)
        buf = io.BytesIO()
        Manifest(str(src), ["etc", "gone"], policy=policy).create(buf)
        with self.assertRaises(EntryMissingError):
            Manifest(str(dst), ["etc", "gone"], policy=policy).extract(io.BytesIO(buf.getvalue()))

    def test_ignore_missing_property(self):
        m = Manifest("/srv")
        self.assertFalse(m.ignore_missing)
        m.ignore_missing = True
        self.assertEqual(m.policy, MissingPolicy.lenient())
        self.assertTrue(m.ignore_missing)

    def test_unsolicited_members_skipped(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        data = _archive(src, "etc", "etc/site.conf", "var")
        report = Manifest(str(dst), ["etc"]).extract(io.BytesIO(data))
        self.assertEqual(report.extracted, ["etc"])
        self.assertEqual(report.skipped, ["etc/site.conf", "var"])
        self.assertFalse((dst / "etc" / "site.conf").exists())
        self.assertFalse((dst / "var").exists())

    def test_extract_rejects_symlink_member(self):
        _, dst = self.run_with_dirs()
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w|") as tf:
            info = tarfile.TarInfo("link")
            info.type = tarfile.SYMTYPE
            info.linkname = "/etc/passwd"
            tf.addfile(info)
        with self.assertRaises(UnsupportedEntryError):
            Manifest(str(dst), ["link"]).extract(io.BytesIO(buf.getvalue()))
        self.assertFalse(os.path.lexists(dst / "link"))

    def test_overwrite_existing_file(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        data = _archive(src, "etc/site.conf")
        (dst / "etc").mkdir()
        (dst / "etc" / "site.conf").write_text("stale contents that are longer\n", encoding="utf-8")
        Manifest(str(dst), ["etc/site.conf"]).extract(io.BytesIO(data))
        self.assertEqual((dst / "etc" / "site.conf").read_text(encoding="utf-8"), "listen 8080\n")

    def test_existing_directory_is_success(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        os.chmod(src / "etc", 0o700)
        data = _archive(src, "etc")
        (dst / "etc").mkdir(mode=0o755)
        os.chmod(dst / "etc", 0o755)
        (dst / "etc" / "keep").write_text("x", encoding="utf-8")

        Manifest(str(dst), ["etc"]).extract(io.BytesIO(data))
        Manifest(str(dst), ["etc"]).extract(io.BytesIO(data))
        self.assertTrue((dst / "etc" / "keep").exists())
        # an existing directory keeps its mode
        self.assertEqual(stat.S_IMODE(os.stat(dst / "etc").st_mode), 0o755)

    def test_file_modes_roundtrip(self):
        src, dst = self.run_with_dirs()
        modes = {"ro": 0o400, "exec": 0o755, "private": 0o600, "setuid": 0o4755}
        for name, mode in modes.items():
            (src / name).write_bytes(name.encode())
            os.chmod(src / name, mode)
        data = _archive(src, *modes)
        Manifest(str(dst), list(modes)).extract(io.BytesIO(data))
        for name, mode in modes.items():
            self.assertEqual(stat.S_IMODE(os.stat(dst / name).st_mode), mode, name)

    def test_directory_modes_roundtrip(self):
        src, dst = self.run_with_dirs()
        modes = {"tmp": 0o1777, "shared": 0o2775, "locked": 0o700}
        for name, mode in modes.items():
            (src / name).mkdir()
            os.chmod(src / name, mode)
        data = _archive(src, *modes)
        Manifest(str(dst), list(modes)).extract(io.BytesIO(data))
        for name, mode in modes.items():
            self.assertEqual(stat.S_IMODE(os.stat(dst / name).st_mode), mode, name)

    def test_header_records_owner(self):
        src, _ = self.run_with_dirs()
        _create_sample_files(src)
        data = _archive(src, "etc/site.conf")
        st = os.stat(src / "etc" / "site.conf")
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tf:
            member = tf.getmember("etc/site.conf")
        self.assertEqual(member.uid, st.st_uid)
        self.assertEqual(member.gid, st.st_gid)
        self.assertEqual(member.size, st.st_size)

    def test_uid_gid_roundtrip(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        uid, gid = 4321, 8765
        try:
            os.chown(src / "etc" / "site.conf", uid, gid)
        except PermissionError:
            self.skipTest("chown not permitted")
        data = _archive(src, "etc", "etc/site.conf")
        Manifest(str(dst), ["etc", "etc/site.conf"], ownership=NumericOwnership()).extract(io.BytesIO(data))
        st = os.stat(dst / "etc" / "site.conf")
        self.assertEqual((st.st_uid, st.st_gid), (uid, gid))

    def test_skip_ownership_keeps_extracting_user(self):
        src, dst = self.run_with_dirs()
        _create_sample_files(src)
        data = _archive(src, "etc", "etc/site.conf")
        Manifest(str(dst), ["etc", "etc/site.conf"], ownership=SkipOwnership()).extract(io.BytesIO(data))
        self.assertEqual(os.stat(dst / "etc" / "site.conf").st_uid, os.geteuid())

    def test_by_name_ownership_falls_back_per_field(self):
        info = tarfile.TarInfo("x")
        info.uid, info.gid = 4321, 8765
        info.uname, info.gname = "no-such-user-sitepkg", "no-such-group-sitepkg"
        self.assertEqual(ByNameOwnership().resolve(info), (4321, 8765))

        info.uname = "root"
        uid, gid = ByNameOwnership().resolve(info)
        self.assertEqual(uid, 0)
        self.assertEqual(gid, 8765)

    def test_load_manifest_file(self):
        src, _ = self.run_with_dirs()
        mf = src / "MANIFEST"
        mf.write_bytes(b"etc\netc/site.conf\r\nvar\n\nvar\nna\xc3\xafve.txt")
        m = load(str(mf), "/srv/site", ignore_missing=True)
        self.assertEqual(list(m), ["etc", "etc/site.conf", "var", "", "naïve.txt"])
        self.assertEqual(m.root, "/srv/site")
        self.assertTrue(m.ignore_missing)


if __name__ == "__main__":
    unittest.main()
