from ssltunnel.tunnel import main

main()
