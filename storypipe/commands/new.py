"""
sp new - Create a story.
"""

import sys
from pathlib import Path

from storypipe.lib.config import PipelineConfig
from storypipe.storage.stories import StoryStore


def cmd_new(args, root: Path, config: PipelineConfig) -> int:
    """Create a story from a title and optional content."""
    content = args.content or ""
    if args.file:
        if args.file == "-":
            content = sys.stdin.read()
        else:
            path = Path(args.file)
            if not path.exists():
                print(f"ERROR: File not found: {args.file}")
                return 2
            content = path.read_text()

    if not args.title.strip():
        print("ERROR: Title must not be empty")
        return 2

    store = StoryStore(root, config.lock_timeout)
    story = store.create(
        title=args.title.strip(),
        content=content,
        codebase_id=args.codebase,
        target_file=args.target_file,
        target_class=args.target_class,
        target_method=args.target_method,
    )

    print(f"Created story {story.id}: {story.title}")
    print()
    print("Next steps:")
    print(f"  sp run {story.id}       # Run the pipeline")
    print(f"  sp show {story.id}      # Show story details")
    return 0
