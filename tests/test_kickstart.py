"""
Tests for kickstart generation and validation.
"""

import pytest

from almalab.kickstart import (
    OEMDRV_LABEL,
    generate_kickstart,
    kernel_boot_args,
    ks_location_for,
    netmask_from_prefix,
    packer_boot_command,
    validate_kickstart,
)

from conftest import HASHED_PASSWORD, SSH_KEY


def lines_of(text):
    return text.splitlines()


class TestGenerateKickstart:
    """Tests for rendered kickstart content."""

    def test_minimal_kickstart_is_valid(self):
        """Test the default kickstart passes validation."""
        text = generate_kickstart("lab01", HASHED_PASSWORD)
        assert validate_kickstart(text) == []
        assert f"rootpw --iscrypted {HASHED_PASSWORD}" in lines_of(text)
        assert "reboot --eject" == lines_of(text)[-1]

    def test_dhcp_network(self):
        """Test DHCP network line with FQDN."""
        text = generate_kickstart("lab01", HASHED_PASSWORD, domain="lab.local")
        assert ("network --bootproto=dhcp --device=link --activate --onboot=yes "
                "--hostname=lab01.lab.local") in lines_of(text)

    def test_static_network(self):
        """Test static address, derived gateway and name servers."""
        text = generate_kickstart("lab01", HASHED_PASSWORD, ip_address="192.168.100.20/24",
                                  dns_servers=["1.1.1.1", "8.8.8.8"])
        assert ("network --bootproto=static --device=link --activate --onboot=yes "
                "--ip=192.168.100.20 --netmask=255.255.255.0 --gateway=192.168.100.1 "
                "--nameserver=1.1.1.1,8.8.8.8 --hostname=lab01") in lines_of(text)

    def test_user_with_password_and_key(self):
        """Test the admin user line, SSH key and sudoers entry."""
        text = generate_kickstart("lab01", HASHED_PASSWORD, username="labuser",
                                  user_password=HASHED_PASSWORD, ssh_keys=[SSH_KEY])
        assert (f"user --name=labuser --groups=wheel --iscrypted --password={HASHED_PASSWORD}"
                in lines_of(text))
        assert f'sshkey --username=labuser "{SSH_KEY}"' in lines_of(text)
        assert "echo 'labuser ALL=(ALL) NOPASSWD:ALL' > /etc/sudoers.d/labuser" in lines_of(text)

    def test_user_without_password_is_locked(self):
        """Test a key-only user gets a locked password."""
        text = generate_kickstart("lab01", HASHED_PASSWORD, username="labuser", ssh_keys=[SSH_KEY])
        assert "user --name=labuser --groups=wheel --lock" in lines_of(text)
        assert validate_kickstart(text) == []

    def test_plaintext_passwords_rejected(self):
        """Test unencrypted passwords raise ValueError."""
        with pytest.raises(ValueError, match="root_password"):
            generate_kickstart("lab01", "secret")
        with pytest.raises(ValueError, match="user_password"):
            generate_kickstart("lab01", HASHED_PASSWORD, username="u", user_password="secret")

    def test_hyperv_packages_and_services(self):
        """Test Hyper-V integration services are installed and enabled."""
        text = generate_kickstart("lab01", HASHED_PASSWORD)
        assert "hyperv-daemons" in lines_of(text)
        assert "systemctl enable hypervkvpd hypervvssd" in lines_of(text)

    def test_cloud_init(self):
        """Test cloud-init is installed and limited to NoCloud."""
        text = generate_kickstart("tmpl", HASHED_PASSWORD, install_cloud_init=True)
        assert "cloud-init" in lines_of(text)
        assert "datasource_list: [ NoCloud, None ]" in text
        assert validate_kickstart(text) == []

    def test_extra_packages_deduplicated(self):
        """Test extra packages are appended once."""
        text = generate_kickstart("lab01", HASHED_PASSWORD, packages=["vim-enhanced", "chrony"])
        assert lines_of(text).count("chrony") == 1
        assert "vim-enhanced" in lines_of(text)

    def test_postinstall_runs_on_first_boot(self):
        """Test the post-install script is written and run by a systemd unit."""
        script = "#!/bin/bash\nset -euo pipefail\necho done\n"
        text = generate_kickstart("lab01", HASHED_PASSWORD, postinstall_script=script)
        assert "cat > /opt/lab/postinstall.sh << 'POSTINSTALL_EOF'" in text
        assert "echo done\nPOSTINSTALL_EOF" in text
        assert "ConditionPathExists=!/opt/lab/.postinstall-completed" in text
        assert "systemctl enable lab-postinstall.service" in lines_of(text)
        assert validate_kickstart(text) == []

    def test_reboot_and_security_defaults(self):
        """Test the install ends with a reboot and keeps SELinux and SSH-only firewalld."""
        lines = lines_of(generate_kickstart("lab01", HASHED_PASSWORD))
        assert lines[-1] == "reboot --eject"
        assert "firewall --enabled --service=ssh" in lines
        assert "selinux --enforcing" in lines


class TestValidateKickstart:
    """Tests for kickstart validation."""

    def test_missing_end(self):
        """Test an unclosed section is reported."""
        text = generate_kickstart("lab01", HASHED_PASSWORD)
        text = text.rsplit("%end", 1)[0]
        problems = validate_kickstart(text)
        assert any("missing %end" in problem for problem in problems)

    def test_stray_end(self):
        """Test %end without a section is reported."""
        text = generate_kickstart("lab01", HASHED_PASSWORD) + "%end\n"
        assert any("without an open section" in problem for problem in validate_kickstart(text))

    def test_nested_section(self):
        """Test a section opened inside another is reported."""
        problems = validate_kickstart("%packages\n@core\n%post\necho\n%end\n")
        assert any("starts before %packages" in problem for problem in problems)

    def test_plaintext_rootpw(self):
        """Test unencrypted rootpw is reported."""
        problems = validate_kickstart("rootpw secret\n")
        assert any("not encrypted" in problem for problem in problems)

    def test_plaintext_user_password(self):
        """Test unencrypted user passwords are reported."""
        problems = validate_kickstart("user --name=u --password=secret\n")
        assert any("user password is not encrypted" in problem for problem in problems)

    def test_missing_directives(self):
        """Test required directives, partitioning and %packages are checked."""
        problems = validate_kickstart("text\n")
        assert "missing required directive: lang" in problems
        assert "missing required directive: bootloader" in problems
        assert any("partitioning" in problem for problem in problems)
        assert "missing %packages section" in problems

    def test_directives_inside_sections_ignored(self):
        """Test shell lines inside %post are not treated as directives."""
        text = generate_kickstart("lab01", HASHED_PASSWORD, postinstall_script="rootpw plain-in-a-comment\n")
        assert validate_kickstart(text) == []


class TestBootArguments:
    """Tests for inst.ks locations and Packer boot commands."""

    def test_oemdrv_location(self):
        """Test the OEMDRV volume location."""
        assert ks_location_for("oemdrv") == f"hd:LABEL={OEMDRV_LABEL}:/ks.cfg"

    def test_http_location(self):
        """Test the Packer HTTP server location."""
        assert ks_location_for("http") == "http://{{ .HTTPIP }}:{{ .HTTPPort }}/ks.cfg"
        assert ks_location_for("http", filename="gen1.cfg").endswith("/gen1.cfg")

    def test_url_location(self):
        """Test explicit URLs."""
        assert ks_location_for("url", url="http://10.0.0.1/ks.cfg") == "http://10.0.0.1/ks.cfg"
        with pytest.raises(ValueError):
            ks_location_for("url")

    def test_unknown_method(self):
        """Test unknown methods are rejected."""
        with pytest.raises(ValueError, match="floppy"):
            ks_location_for("floppy")

    def test_kernel_boot_args(self):
        """Test kernel arguments."""
        assert kernel_boot_args("hd:LABEL=OEMDRV:/ks.cfg") == "inst.ks=hd:LABEL=OEMDRV:/ks.cfg inst.text"
        assert kernel_boot_args("x", text_mode=False, extra=["ip=dhcp"]) == "inst.ks=x ip=dhcp"

    def test_gen2_boot_command(self):
        """Test GRUB editing keystrokes for UEFI."""
        command = packer_boot_command(2, "inst.ks=x")
        assert command[1] == "e<wait>"
        assert " inst.ks=x" in command
        assert command[-1] == "<leftCtrlOn>x<leftCtrlOff>"

    def test_gen1_boot_command(self):
        """Test isolinux keystrokes for BIOS."""
        command = packer_boot_command(1, "inst.ks=x")
        assert command[1] == "<tab><wait>"
        assert command[-1] == "<enter>"

    def test_invalid_generation(self):
        """Test only generations 1 and 2 are supported."""
        with pytest.raises(ValueError):
            packer_boot_command(3, "inst.ks=x")

    @pytest.mark.parametrize("prefix,netmask", [(24, "255.255.255.0"), (16, "255.255.0.0"), (28, "255.255.255.240")])
    def test_netmask_from_prefix(self, prefix, netmask):
        """Test prefix to netmask conversion."""
        assert netmask_from_prefix(prefix) == netmask
