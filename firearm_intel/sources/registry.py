"""
Configured auction sources.

Competitor auction houses across Texas, Oklahoma and Louisiana, plus the
national estate-sale aggregators. The coordinator scrapes them in this order.
"""

from typing import Optional

from ..models import AuctionSource, SourceCategory

C = SourceCategory.COMPETITOR
E = SourceCategory.ESTATE


AUCTION_SOURCES: list[AuctionSource] = [
    # Texas
    AuctionSource("Heritage Auctions (Arms & Armor)", "https://historical.ha.com/", "Dallas", "TX", C),
    AuctionSource("Western Sportsman LLC", "https://www.westernsportsman.auction/", "Fort Worth", "TX", C),
    AuctionSource("Warren Liquidation Auction & Resale", "https://www.warrenliquidation.com/auction/list", "Fort Worth", "TX", C),
    AuctionSource("Rock Island Auction Company (Texas)", "https://www.rockislandauction.com/", "Bedford", "TX", C),
    AuctionSource("Texas Auction Realty", "https://www.texasauctionrealty.com/", "Weatherford", "TX", C),
    AuctionSource("Lone Star Auctioneers", "https://www.lso.cc/", "Arlington", "TX", C),
    AuctionSource(
        "HiBid Dallas-area Firearms",
        "https://dallas.hibid.com/auctions/40228/sporting-goods/firearms---weapons",
        "Dallas", "TX", C,
    ),
    AuctionSource("Right To Bear Arms Auction Co.", "https://www.r2baauctions.com/", "Chico", "TX", C),
    AuctionSource("Central Texas Auction Services", "https://www.centraltexasauctionservices.com/", "Belton", "TX", C),
    AuctionSource("A & S Auction Company", "https://asauctions.com/", "Waco", "TX", C),
    AuctionSource("Brand Used Works", "https://hibid.com/company/63519/brand-used-works", "Henderson", "TX", C),
    AuctionSource("Trinity Auction Gallery", "https://amp-tag.com/", "Trinity", "TX", C),
    AuctionSource("TexMax Auctions", "https://www.texmax.net/", "Houston", "TX", C),
    AuctionSource("Webster's Auction Palace", "https://webstersauction.com/", "Humble", "TX", C),
    AuctionSource("Lewis & Maese Antiques & Auctions", "https://www.lmauctionco.com/", "Houston", "TX", C),
    AuctionSource("Burley Auction Group", "https://www.burleyauction.com/", "New Braunfels", "TX", C),
    AuctionSource("Vogt Auction", "https://vogtauction.com/category/firearms-militaria", "San Antonio", "TX", C),
    AuctionSource("Dury's Guns", "https://durysguns.com/", "San Antonio", "TX", C),
    AuctionSource(
        "South Texas Auction Company",
        "https://hibid.com/company/138293/south-texas-auction-company--llc",
        "Brownsville", "TX", C,
    ),
    AuctionSource("Rene Bates Auctioneers", "https://www.renebates.com/", "Houston", "TX", C),
    AuctionSource("Clark Auction Company", "https://www.clarkauctioncompany.com/", "Temple", "TX", C),
    AuctionSource("Spanky's Online Auction", "https://spankysonline.com/", "Lubbock", "TX", C),
    AuctionSource("Ward Real Estate & Auction", "https://www.wardrealestateauctions.com/", "Corpus Christi", "TX", C),
    AuctionSource("Canyon Auctions", "https://www.canyonauctions.com/", "Amarillo", "TX", C),
    # Oklahoma
    AuctionSource("Chupps Auction & Real Estate", "https://chuppsauction.hibid.com/", "Tulsa", "OK", C),
    AuctionSource("Wiggins Auctioneers", "https://www.wigginsauctioneers.com/", "Enid", "OK", C),
    AuctionSource("Smith & Co. Auction & Realty", "https://www.smithcoauctions.com/", "Woodward", "OK", C),
    AuctionSource("Pickens Auction", "https://www.pickensauctions.com/", "Oklahoma City", "OK", C),
    AuctionSource("Aline Auction", "https://www.alineauction.com/", "Aline", "OK", C),
    AuctionSource("Ball Auction Service", "https://ballauctionservice.com/", "Stillwater", "OK", C),
    # Louisiana
    AuctionSource("Bonnette Auctions", "https://bonnetteauctions.com/", "Alexandria", "LA", C),
    AuctionSource("Lawler Auction Company", "https://www.lawlerauction.com/", "Shreveport", "LA", C),
    AuctionSource("Henderson Auctions", "https://www.hendersonauctions.com/", "Baton Rouge", "LA", C),
    AuctionSource("Stokes & Hubbell Auctioneers", "https://www.stokesandhubbell.com/", "Lafayette", "LA", C),
    # Estate-sale aggregators
    AuctionSource(
        "EstateSales.net", "https://www.estatesales.net", "Dallas", "TX", E,
        extract_url="https://www.estatesales.net/TX/Dallas",
    ),
    AuctionSource("AuctionZip", "https://www.auctionzip.com", "Dallas", "TX", E),
    AuctionSource("EstateSale.com", "https://www.estatesale.com", "Houston", "TX", E),
]


def get_sources(category: Optional[SourceCategory] = None) -> list[AuctionSource]:
    """Configured sources, optionally only those of one category."""
    if category is None:
        return list(AUCTION_SOURCES)
    return [source for source in AUCTION_SOURCES if source.category == category]


def find_source(url: str) -> Optional[AuctionSource]:
    """The configured source whose root URL the given URL falls under."""
    for source in AUCTION_SOURCES:
        if url.startswith(source.url.rstrip("/")):
            return source
    return None
