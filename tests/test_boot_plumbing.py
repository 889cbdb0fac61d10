from luksmedia.boot_plumbing import (
    CrypttabEntry,
    append_crypttab,
    set_assignment,
    write_initramfs_hooks,
)


def read(path):
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read()


ENTRIES = [
    CrypttabEntry("LUKS_BOOT", "uuid-boot", "/etc/luks/boot_os.keyfile"),
    CrypttabEntry("sdb3_crypt", "uuid-root", "/etc/luks/boot_os.keyfile"),
]


def test_append_crypttab_creates_file(tmp_path):
    path = append_crypttab(str(tmp_path), ENTRIES)

    assert path == str(tmp_path / "etc" / "crypttab")
    assert read(path) == (
        "LUKS_BOOT UUID=uuid-boot /etc/luks/boot_os.keyfile luks,discard\n"
        "sdb3_crypt UUID=uuid-root /etc/luks/boot_os.keyfile luks,discard\n"
    )


def test_append_crypttab_replaces_same_name_and_keeps_others(tmp_path):
    ct = tmp_path / "etc" / "crypttab"
    ct.parent.mkdir()
    ct.write_text(
        "# <target name> <source device> <key file> <options>\n"
        "sdb3_crypt UUID=uuid-root none luks,discard,initramfs\n"
        "backup UUID=other none luks\n",
        encoding="utf-8",
    )

    append_crypttab(str(tmp_path), ENTRIES)
    append_crypttab(str(tmp_path), ENTRIES)

    lines = read(ct).splitlines()
    assert lines[0].startswith("#")
    assert "backup UUID=other none luks" in lines
    assert sum(1 for line in lines if line.startswith("sdb3_crypt ")) == 1
    assert "sdb3_crypt UUID=uuid-root /etc/luks/boot_os.keyfile luks,discard,initramfs" in lines
    assert "LUKS_BOOT UUID=uuid-boot /etc/luks/boot_os.keyfile luks,discard" in lines
    assert {line.split()[0] for line in lines[1:]} == {"sdb3_crypt", "backup", "LUKS_BOOT"}


def test_set_assignment_is_idempotent(tmp_path):
    conf = tmp_path / "initramfs.conf"
    conf.write_text("MODULES=most\n# UMASK=0022\nCOMPRESS=zstd\n", encoding="utf-8")

    assert set_assignment(str(conf), "UMASK", "0077") is True
    assert set_assignment(str(conf), "UMASK", "0077") is False
    assert read(conf).splitlines() == ["MODULES=most", "UMASK=0077", "COMPRESS=zstd"]


def test_write_initramfs_hooks(tmp_path):
    changed = write_initramfs_hooks(str(tmp_path), "/etc/luks/*.keyfile")

    hook = tmp_path / "etc" / "cryptsetup-initramfs" / "conf-hook"
    conf = tmp_path / "etc" / "initramfs-tools" / "initramfs.conf"
    assert changed == {str(hook): True, str(conf): True}
    assert read(hook) == "KEYFILE_PATTERN=/etc/luks/*.keyfile\n"
    assert read(conf) == "UMASK=0077\n"
    assert set(write_initramfs_hooks(str(tmp_path), "/etc/luks/*.keyfile").values()) == {False}
