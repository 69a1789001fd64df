"""Shell scripts pushed into new containers."""

# Runs as root inside a freshly launched container. UID_PLACEHOLDER is
# replaced with the host user's UID so bind-mounted files keep their owner.
PROVISION_SCRIPT = """\
set -e

# Wait for network (up to 60 seconds)
network_ready=false
for i in {1..60}; do
    if ping -c1 -W1 archive.ubuntu.com &>/dev/null; then
        network_ready=true
        break
    fi
    sleep 1
done

if [[ "$network_ready" != "true" ]]; then
    echo "ERROR: Network not available after 60 seconds" >&2
    exit 1
fi

export DEBIAN_FRONTEND=noninteractive
apt-get update
apt-get install -y --no-install-recommends \\
    openssh-server \\
    docker.io \\
    docker-compose \\
    curl \\
    git \\
    ca-certificates \\
    sudo

existing_user=$(getent passwd UID_PLACEHOLDER | cut -d: -f1)
if [[ -n "$existing_user" ]]; then
    userdel -r "$existing_user" 2>/dev/null || true
fi
useradd -m -s /bin/bash -u UID_PLACEHOLDER dev
usermod -aG docker dev

echo 'dev ALL=(ALL) NOPASSWD:ALL' > /etc/sudoers.d/dev
chmod 440 /etc/sudoers.d/dev

sed -i 's/^#*PermitRootLogin.*/PermitRootLogin no/' /etc/ssh/sshd_config
sed -i 's/^#*PasswordAuthentication.*/PasswordAuthentication no/' /etc/ssh/sshd_config

systemctl enable ssh docker
systemctl start ssh docker
"""

# Default post-create script, run as the dev user. Installs uv, nvm and OpenCode.
POST_INSTALL_SCRIPT = """\
#!/bin/bash
touch ~/.bashrc

grep -q "/.local/bin" ~/.bashrc || echo 'export PATH="$HOME/.local/bin:$PATH"' >> ~/.bashrc
grep -q ".local/bin/env" ~/.bashrc || echo '[ -f "$HOME/.local/bin/env" ] && . "$HOME/.local/bin/env"' >> ~/.bashrc
grep -q "NVM_DIR" ~/.bashrc || cat >> ~/.bashrc << 'NVMRC'
export NVM_DIR="$HOME/.nvm"
[ -s "$NVM_DIR/nvm.sh" ] && \\. "$NVM_DIR/nvm.sh"
[ -s "$NVM_DIR/bash_completion" ] && \\. "$NVM_DIR/bash_completion"
NVMRC

touch ~/.profile
grep -q ".bashrc" ~/.profile || echo '[ -n "$BASH_VERSION" ] && [ -f "$HOME/.bashrc" ] && . "$HOME/.bashrc"' >> ~/.profile

curl -LsSf https://astral.sh/uv/install.sh | sh

curl -o- https://raw.githubusercontent.com/nvm-sh/nvm/v0.40.1/install.sh | bash
export NVM_DIR="$HOME/.nvm"
[ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"
nvm install --lts

curl -fsSL https://opencode.ai/install | bash
"""


def get_provision_script(host_uid: int) -> str:
    """Return the provisioning script with the host UID filled in."""
    return PROVISION_SCRIPT.replace("UID_PLACEHOLDER", str(host_uid))
