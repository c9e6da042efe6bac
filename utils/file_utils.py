"""
File operation utilities
"""

from pathlib import Path
from typing import List

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.gif', '.tiff', '.webp'}


def get_image_files(directory: str, recursive: bool = True) -> List[str]:
    """Get all image files in directory, sorted by path"""
    path = Path(directory)
    pattern = '**/*' if recursive else '*'

    image_files = {
        f for f in path.glob(pattern)
        if f.is_file() and f.suffix.lower() in IMAGE_EXTENSIONS
    }

    return sorted(str(f) for f in image_files)


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"
