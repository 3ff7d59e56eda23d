import os
import logging
import importlib.util
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set


@dataclass(frozen=True)
class ThumbnailSize:
    name: str
    width: int
    height: int
    quality: int = 85


DEFAULT_THUMBNAIL_SIZES = (
    ThumbnailSize("thumb", 300, 300, 80),
    ThumbnailSize("medium", 800, 800, 85),
    ThumbnailSize("large", 1920, 1920, 90),
)


class PluginRegistry:
    """Central registry for all image format plugins."""

    def __init__(self):
        self.plugins: Dict[str, 'BasePlugin'] = {}
        self.format_map: Dict[str, 'BasePlugin'] = {}

    def register_plugin(self, plugin: 'BasePlugin'):
        """Register a plugin and its supported formats."""
        plugin_name = plugin.__class__.__name__
        if plugin_name in self.plugins:
            # Update mutable settings on the existing instance rather than skipping,
            # so config changes take effect without a full reload.
            existing = self.plugins[plugin_name]
            existing.cache_dir = plugin.cache_dir
            existing.thumbnail_cache_dir = plugin.thumbnail_cache_dir
            existing.sizes = plugin.sizes
            existing.output_format = plugin.output_format
            return

        self.plugins[plugin_name] = plugin

        formats = plugin.get_supported_formats()
        for ext in formats:
            if ext in self.format_map:
                logging.warning(f"Format {ext} already registered by {self.format_map[ext].__class__.__name__}, overriding with {plugin_name}")
            self.format_map[ext] = plugin
            logging.debug(f"Registered format {ext} with plugin {plugin_name}")

        logging.info(f"Plugin {plugin_name} registered with formats: {', '.join(formats)}")

    def get_plugin_for_format(self, file_extension: str) -> Optional['BasePlugin']:
        """Get the plugin that handles a specific file format."""
        if not file_extension.startswith('.'):
            file_extension = '.' + file_extension
        return self.format_map.get(file_extension.lower())

    def get_supported_formats(self) -> Set[str]:
        """Get all supported file formats across all plugins."""
        return set(self.format_map.keys())

    def load_plugins_from_directory(self, plugin_dir: str, cache_dir: str,
                                    sizes: Iterable[ThumbnailSize] = DEFAULT_THUMBNAIL_SIZES,
                                    output_format: str = "webp"):
        """
        Loads all ``*_plugin.py`` modules from a directory and registers the
        available ones.
        """
        logging.info(f"Loading plugins from directory: {plugin_dir}")
        for filename in sorted(os.listdir(plugin_dir)):
            if filename.endswith('_plugin.py') and filename != 'base_plugin.py':
                module_name = filename[:-3]
                try:
                    # Use the fully-qualified package name so that relative imports
                    # (e.g. `from .base_plugin import BasePlugin`) resolve correctly.
                    file_path = os.path.join(plugin_dir, filename)
                    full_module_name = f"plugins.{module_name}"
                    module = sys.modules.get(full_module_name)
                    if module is None:
                        spec = importlib.util.spec_from_file_location(full_module_name, file_path)
                        if spec is None or spec.loader is None:
                            logging.warning(f"Could not create module spec for {filename}")
                            continue
                        module = importlib.util.module_from_spec(spec)
                        sys.modules[full_module_name] = module
                        spec.loader.exec_module(module)

                    for attribute_name in dir(module):
                        attribute = getattr(module, attribute_name)
                        if isinstance(attribute, type) and issubclass(attribute, BasePlugin) and attribute is not BasePlugin:
                            plugin_instance = attribute(cache_dir=cache_dir, sizes=sizes, output_format=output_format)
                            if plugin_instance.is_available():
                                self.register_plugin(plugin_instance)
                            else:
                                logging.warning(f"Plugin {attribute.__name__} not available - missing dependencies")
                            break  # Assume one plugin class per file
                except Exception as e:  # why: a broken plugin file must not stop the daemon from loading the others
                    logging.error(f"Failed to load plugin {filename}: {e}")
                    logging.exception(f"Detailed error loading plugin {filename}:")
        logging.info("Finished loading plugins.")


# Global plugin registry instance
plugin_registry = PluginRegistry()


class BasePlugin(ABC):
    """Base class for all thumbnail generation plugins."""

    def __init__(self, cache_dir: str, sizes: Iterable[ThumbnailSize] = DEFAULT_THUMBNAIL_SIZES,
                 output_format: str = "webp"):
        self.cache_dir = cache_dir
        self.thumbnail_cache_dir = os.path.join(cache_dir, "thumbnails")
        self.sizes: List[ThumbnailSize] = list(sizes)
        self.output_format = output_format.lower()
        os.makedirs(self.thumbnail_cache_dir, exist_ok=True)

    @abstractmethod
    def is_available(self) -> bool:
        """Check if all required dependencies for this plugin are available."""
        pass

    @abstractmethod
    def get_supported_formats(self) -> List[str]:
        """Return list of supported file extensions (with dots, lowercase)."""
        pass

    @abstractmethod
    def generate_thumbnail(self, image_path: str, size: ThumbnailSize, output_path: str) -> bool:
        """
        Write one thumbnail of ``image_path`` fitting inside ``size`` to output_path.
        Returns True if successful, False otherwise.
        """
        pass

    def get_thumbnail_path(self, folder_path: str, image_name: str, size_name: str) -> str:
        """``<cache>/thumbnails/<folder>/<stem>_<size>.<format>``, mirroring the gallery tree."""
        stem, _ = os.path.splitext(image_name)
        parts = [p for p in folder_path.split("/") if p]
        return os.path.join(self.thumbnail_cache_dir, *parts, f"{stem}_{size_name}.{self.output_format}")

    def process_thumbnails(self, image_path: str, folder_path: str) -> Dict[str, str]:
        """Generates every configured size. Returns {size name: path} for the sizes written."""
        results: Dict[str, str] = {}
        image_name = os.path.basename(image_path)
        for size in self.sizes:
            output_path = self.get_thumbnail_path(folder_path, image_name, size.name)
            if self.generate_thumbnail(image_path, size, output_path):
                results[size.name] = output_path
        return results
