"""
catalog_index.py
-----------------
Per-run lookup indices over a tenant's catalog.

Built once from the catalog provider's nodes and products at the start of a
run and read-only afterwards, so match workers can share it without locks.

Indices:
    - normalised URL  -> product or node (products win a shared URL)
    - product id      -> product (case-insensitive)
    - node path       -> node, longest paths first
    - segment tuple   -> node, with aliases folded in
    - GTIN key        -> product (checksum-valid codes only)

Building the index also validates the tree. A dangling parent, a cycle, a
depth that disagrees with the parent, or a children list that disagrees with
parent_id raises InconsistentCatalogError naming the offending nodes.
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from core.errors import InconsistentCatalogError
from core.models import CatalogNode, CatalogProduct, ENTITY_NODE, ENTITY_PRODUCT
from core.normalizer import normalize_gtin, normalize_url, slugify, url_segments
from config.config_loader import get_matching_config

logger = logging.getLogger(__name__)


class CatalogIndex:
    """
    Read-only lookup tables for one tenant's catalog.

    Usage:
        index = CatalogIndex(nodes, products)
        index.lookup_url("/electronics/phones")
    """

    def __init__(
        self,
        nodes: Iterable[CatalogNode],
        products: Iterable[CatalogProduct],
        category_aliases: Optional[Dict[str, str]] = None,
    ):
        self.nodes: Dict[str, CatalogNode] = {}
        self.products: Dict[str, CatalogProduct] = {}
        self.children: Dict[str, List[str]] = {}
        self.products_by_node: Dict[str, List[str]] = {}

        self._by_url: Dict[str, Tuple[str, str]] = {}
        self._product_ids: Dict[str, str] = {}
        self._node_paths: List[Tuple[str, str]] = []
        self._segments: Dict[Tuple[str, ...], str] = {}
        self._gtin: Dict[str, str] = {}
        self._aliases: Dict[str, str] = {}
        self._fuzzy: List[Tuple[str, str, str]] = []

        if category_aliases is None:
            category_aliases = get_matching_config().get("category_aliases", {}) or {}

        self._load_nodes(nodes)
        self._validate_tree()
        self._load_products(products)
        self._build_aliases(category_aliases)
        self._build_lookups()

        logger.info(
            f"Catalog indexed: {len(self.nodes):,} nodes, {len(self.products):,} products, "
            f"{len(self._gtin):,} GTIN keys, {len(self._by_url):,} URL keys."
        )

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def lookup_url(self, normalized_url: str) -> Optional[Tuple[str, str]]:
        """(entity_type, entity_id) whose canonical URL normalises to this, or None."""
        return self._by_url.get(normalized_url)

    def lookup_product_id(self, candidate: str) -> Optional[str]:
        return self._product_ids.get(candidate.lower())

    def lookup_gtin(self, key: str) -> Optional[str]:
        """Product id for a padded GTIN key, or None."""
        return self._gtin.get(key)

    def lookup_segments(self, segments: Tuple[str, ...]) -> Optional[str]:
        return self._segments.get(segments)

    def canonical_segment(self, segment: str) -> str:
        """Resolves a known alias to its canonical segment slug."""
        return self._aliases.get(segment, segment)

    def node_paths(self) -> List[Tuple[str, str]]:
        """(normalised path, node_id), longest path first, empty paths excluded."""
        return self._node_paths

    def fuzzy_candidates(self) -> List[Tuple[str, str, str]]:
        """(comparison key, entity_type, entity_id) for every node and product, sorted."""
        return self._fuzzy

    def nodes_by_depth_desc(self) -> List[CatalogNode]:
        """Deepest nodes first; ties broken by node id for deterministic output."""
        return sorted(self.nodes.values(), key=lambda n: (-n.depth, n.node_id))

    def roots(self) -> List[CatalogNode]:
        return sorted((n for n in self.nodes.values() if n.parent_id is None), key=lambda n: n.node_id)

    def owning_node(self, product_id: str) -> Optional[str]:
        product = self.products.get(product_id)
        return product.node_id if product else None

    def subtree_products(self, node_id: str) -> List[CatalogProduct]:
        """All products under a node, its own included. Iterative walk."""
        found: List[CatalogProduct] = []
        stack = [node_id]
        while stack:
            current = stack.pop()
            found.extend(self.products[p] for p in self.products_by_node.get(current, []))
            stack.extend(self.children.get(current, []))
        return found

    # -------------------------------------------------------------------------
    # INTERNAL: LOADING & VALIDATION
    # -------------------------------------------------------------------------

    def _load_nodes(self, nodes: Iterable[CatalogNode]) -> None:
        duplicates = []
        for node in nodes:
            if node.node_id in self.nodes:
                duplicates.append(node.node_id)
                continue
            self.nodes[node.node_id] = node
        if duplicates:
            logger.error(f"Duplicate catalog node ids: {sorted(set(duplicates))}")
            raise InconsistentCatalogError("Duplicate node ids", duplicates)

    def _validate_tree(self) -> None:
        """Checks the forest invariants and fills self.children."""
        dangling = [
            n.node_id for n in self.nodes.values()
            if n.parent_id is not None and n.parent_id not in self.nodes
        ]
        if dangling:
            logger.error(f"Catalog nodes cite a nonexistent parent: {sorted(dangling)}")
            raise InconsistentCatalogError("Nodes cite a nonexistent parent", dangling)

        cyclic = self._find_cycles()
        if cyclic:
            logger.error(f"Catalog contains a parent cycle through: {sorted(cyclic)}")
            raise InconsistentCatalogError("Parent cycle", cyclic)

        bad_depth = []
        for node in self.nodes.values():
            expected = 0 if node.parent_id is None else self.nodes[node.parent_id].depth + 1
            if node.depth != expected:
                bad_depth.append(node.node_id)
        if bad_depth:
            logger.error(f"Catalog node depths disagree with their parents: {sorted(bad_depth)}")
            raise InconsistentCatalogError("Depth does not match parent depth + 1", bad_depth)

        derived: Dict[str, List[str]] = {node_id: [] for node_id in self.nodes}
        for node in sorted(self.nodes.values(), key=lambda n: n.node_id):
            if node.parent_id is not None:
                derived[node.parent_id].append(node.node_id)

        mismatched = []
        for node in self.nodes.values():
            if not node.children:
                self.children[node.node_id] = derived[node.node_id]
                continue
            if sorted(node.children) != sorted(derived[node.node_id]):
                mismatched.append(node.node_id)
                continue
            self.children[node.node_id] = list(node.children)
        if mismatched:
            logger.error(f"Catalog children lists disagree with parent ids: {sorted(mismatched)}")
            raise InconsistentCatalogError("Children list disagrees with parent ids", mismatched)

    def _find_cycles(self) -> List[str]:
        """Node ids that sit on, or lead into, a parent cycle."""
        state: Dict[str, int] = {}   # 1 = on current walk, 2 = known acyclic
        cyclic: List[str] = []
        for start in self.nodes:
            walk = []
            current: Optional[str] = start
            while current is not None and state.get(current) is None:
                state[current] = 1
                walk.append(current)
                current = self.nodes[current].parent_id
            hit_cycle = current is not None and state.get(current) == 1
            for node_id in walk:
                state[node_id] = 2
            if hit_cycle:
                cyclic.extend(walk)
        return cyclic

    def _load_products(self, products: Iterable[CatalogProduct]) -> None:
        for product in products:
            if product.node_id not in self.nodes:
                logger.warning(
                    f"Product {product.product_id} cites unknown node {product.node_id}; skipped."
                )
                continue
            if product.product_id in self.products:
                logger.warning(f"Duplicate product id {product.product_id}; keeping the first.")
                continue
            self.products[product.product_id] = product
            self.products_by_node.setdefault(product.node_id, []).append(product.product_id)

    def _build_aliases(self, category_aliases: Dict[str, str]) -> None:
        for alias, canonical in category_aliases.items():
            self._aliases[slugify(str(alias))] = slugify(str(canonical))

        for node in sorted(self.nodes.values(), key=lambda n: n.node_id):
            segments = url_segments(normalize_url(node.path))
            if not segments:
                continue
            for alias in node.aliases:
                slug = slugify(alias)
                if not slug or slug == segments[-1]:
                    continue
                canonical = self.canonical_segment(segments[-1])
                if slug in self._aliases and self._aliases[slug] != canonical:
                    logger.debug(f"Alias '{slug}' on node {node.node_id} shadowed by an earlier alias.")
                    continue
                self._aliases[slug] = canonical

    def _build_lookups(self) -> None:
        for node_id in sorted(self.nodes):
            node = self.nodes[node_id]
            url_key = normalize_url(node.url)
            if url_key:
                self._by_url.setdefault(url_key, (ENTITY_NODE, node_id))

            path_key = normalize_url(node.path)
            if path_key:
                self._node_paths.append((path_key, node_id))
                segments = tuple(self.canonical_segment(s) for s in url_segments(path_key))
                if segments:
                    self._segments.setdefault(segments, node_id)

        # Products overwrite nodes on a shared URL.
        for product_id in sorted(self.products):
            product = self.products[product_id]
            url_key = normalize_url(product.url)
            if url_key:
                existing = self._by_url.get(url_key)
                if existing is None or existing[0] == ENTITY_NODE:
                    self._by_url[url_key] = (ENTITY_PRODUCT, product_id)

            self._product_ids.setdefault(product_id.lower(), product_id)

            for raw_code in product.codes:
                gtin = normalize_gtin(raw_code)
                if not gtin.is_valid:
                    logger.debug(f"Product {product_id} code {raw_code!r} fails checksum; not indexed.")
                    continue
                owner = self._gtin.setdefault(gtin.key, product_id)
                if owner != product_id:
                    logger.warning(
                        f"GTIN {gtin.code} shared by products {owner} and {product_id}; keeping {owner}."
                    )

        self._node_paths.sort(key=lambda p: (-len(p[0]), p[1]))

        candidates = set()
        for node in self.nodes.values():
            for key in (normalize_url(node.url), normalize_url(node.path)):
                if key:
                    candidates.add((key, ENTITY_NODE, node.node_id))
        for product in self.products.values():
            key = normalize_url(product.url)
            if key:
                candidates.add((key, ENTITY_PRODUCT, product.product_id))
        self._fuzzy = sorted(candidates, key=lambda c: (c[1], c[2], c[0]))

    def __len__(self) -> int:
        return len(self.nodes)

    def __repr__(self) -> str:
        return f"CatalogIndex(nodes={len(self.nodes)}, products={len(self.products)})"
