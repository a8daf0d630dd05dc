from .critic import export_to_critic, import_from_critic
from .markers import (
    PositionedThread,
    Reply,
    ScanResult,
    Thread,
    build_comment_markers,
    generate_comment_id,
    parse_comments,
    scan_comments,
)
from .sidecar import Sidecar, SidecarRecord, parse_sidecar
from .version import __version__
