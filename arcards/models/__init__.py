from .asset import Asset, AssetStatus
