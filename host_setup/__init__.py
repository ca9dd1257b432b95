"""Host-side setup tools run directly on Proxmox hosts and guests."""
