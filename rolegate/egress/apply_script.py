"""Boot-time apply script run inside the gateway guest.

The script sources the configuration document from the shared mount and
writes the guest's proxychains configuration. It is a fixed template; the
role name is the only parameter.
"""

from __future__ import annotations

from pathlib import PurePosixPath

from rolegate.naming import validate_role_name

# Guest-side mount point of the role directory (virtio-9p tag "proxy")
SHARED_MOUNT_PREFIX = PurePosixPath("/proxy")
SHARED_MOUNT_TAG = "proxy"

CONFIG_FILENAME = "proxy.conf"
APPLY_SCRIPT_FILENAME = "apply-proxy.sh"
GUEST_PROXYCHAINS_CONF = "/etc/proxychains.conf"

_ROLE_PLACEHOLDER = "@ROLE@"

_APPLY_SCRIPT_TEMPLATE = r'''#!/usr/bin/env bash
# Generated by rolegate. Applies @CONF@ to @OUT@ at boot.
set -euo pipefail

ROLE="@ROLE@"
CONF="@CONF@"
OUT="@OUT@"

log() { echo "[apply-proxy][${ROLE}] $*"; }

if [[ ! -f "$CONF" ]]; then
  log "Config file $CONF not found - nothing to do."
  exit 0
fi

# shellcheck disable=SC1090
. "$CONF" || {
  log "Failed to source config from $CONF."
  exit 1
}

write_header() {
  cat > "$OUT" <<EOC
# Auto-generated by apply-proxy.sh for role ${ROLE}
$1
proxy_dns
tcp_read_time_out 15000
tcp_connect_time_out 8000

[ProxyList]
EOC
}

proxy_line() {
  # type host port [user pass]
  if [[ -n "$4" || -n "$5" ]]; then
    echo "$1 $2 $3 $4 $5"
  else
    echo "$1 $2 $3"
  fi
}

MODE="${GATEWAY_MODE:-}"
COUNT="${PROXY_COUNT:-0}"

if [[ "$MODE" = "PROXY_CHAIN" ]] && [[ "$COUNT" =~ ^[0-9]+$ ]] && [[ "$COUNT" -ge 1 ]]; then
  STRAT="${CHAIN_STRATEGY:-strict_chain}"
  LINES=()
  for ((i=1; i<=COUNT; i++)); do
    v="PROXY_${i}_TYPE"; T="${!v:-}"
    v="PROXY_${i}_HOST"; H="${!v:-}"
    v="PROXY_${i}_PORT"; P="${!v:-}"
    v="PROXY_${i}_USER"; U="${!v:-}"
    v="PROXY_${i}_PASS"; PW="${!v:-}"

    if [[ -z "$T" || -z "$H" || -z "$P" ]]; then
      log "Proxy $i incomplete (type/host/port missing) - skipping."
      continue
    fi

    case "$T" in
      SOCKS5|socks5) LINES+=("$(proxy_line socks5 "$H" "$P" "$U" "$PW")") ;;
      HTTP|http) LINES+=("$(proxy_line http "$H" "$P" "$U" "$PW")") ;;
      *) log "Proxy $i has unsupported type '$T' - skipping." ;;
    esac
  done

  if [[ "${#LINES[@]}" -eq 0 ]]; then
    log "No valid proxies found in chain - leaving $OUT untouched."
    exit 0
  fi

  write_header "$STRAT"
  printf '%s\n' "${LINES[@]}" >> "$OUT"
  log "proxychains.conf updated for PROXY_CHAIN (${#LINES[@]} of $COUNT hops)."
  exit 0
fi

if [[ "$MODE" = "PROXY_CHAIN" ]]; then
  log "PROXY_COUNT is invalid ('$COUNT') - trying legacy single-proxy fields."
fi

# Legacy single-hop fields
case "${ACTIVE_PROTOCOL:-}" in
  SOCKS5)
    if [[ -z "${SOCKS5_HOST:-}" || -z "${SOCKS5_PORT:-}" ]]; then
      log "SOCKS5 selected but SOCKS5_HOST or SOCKS5_PORT is empty."
      exit 0
    fi
    write_header strict_chain
    proxy_line socks5 "$SOCKS5_HOST" "$SOCKS5_PORT" "${SOCKS5_USER:-}" "${SOCKS5_PASS:-}" >> "$OUT"
    log "proxychains.conf updated for single SOCKS5."
    ;;
  HTTP)
    if [[ -z "${HTTP_HOST:-}" || -z "${HTTP_PORT:-}" ]]; then
      log "HTTP selected but HTTP_HOST or HTTP_PORT is empty."
      exit 0
    fi
    write_header strict_chain
    proxy_line http "$HTTP_HOST" "$HTTP_PORT" "${HTTP_USER:-}" "${HTTP_PASS:-}" >> "$OUT"
    log "proxychains.conf updated for single HTTP."
    ;;
  *)
    log "GATEWAY_MODE='${MODE}' and ACTIVE_PROTOCOL='${ACTIVE_PROTOCOL:-}' - nothing to do."
    ;;
esac

exit 0
'''


def render_apply_script(role: str) -> str:
    """Render the apply script for *role*."""
    role = validate_role_name(role)
    return (
        _APPLY_SCRIPT_TEMPLATE
        .replace("@CONF@", str(SHARED_MOUNT_PREFIX / CONFIG_FILENAME))
        .replace("@OUT@", GUEST_PROXYCHAINS_CONF)
        .replace(_ROLE_PLACEHOLDER, role)
    )
